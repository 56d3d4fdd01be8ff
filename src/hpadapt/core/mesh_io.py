from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, Union

from .errors import MeshLoadError
from .mesh import Mesh

_ASSIGN = re.compile(r"([A-Za-z_]\w*)\s*=")


def parse_brace_mesh(text: str) -> Dict[str, Any]:
    """
    Parse the brace-nested mesh format

        vertices = { { 0, -1 }, { 1, -1 }, ... }
        elements = { { 0, 1, 4, 3, 0 }, ... }
        boundaries = { { 0, 1, 1 }, ... }

    into a mesh description dict. '#' starts a comment. Only literal numbers
    (and double-quoted markers) are supported.
    """
    body = "\n".join(line.split("#", 1)[0] for line in text.splitlines())
    matches = list(_ASSIGN.finditer(body))
    if not matches:
        raise MeshLoadError("mesh file contains no 'name = {...}' sections")

    out: Dict[str, Any] = {}
    for k, m in enumerate(matches):
        end = matches[k + 1].start() if k + 1 < len(matches) else len(body)
        raw = body[m.end():end].strip().rstrip(";")
        js = raw.replace("{", "[").replace("}", "]")
        js = re.sub(r",\s*]", "]", js)
        try:
            out[m.group(1)] = json.loads(js)
        except json.JSONDecodeError as exc:
            raise MeshLoadError(f"cannot parse section '{m.group(1)}': {exc}") from exc
    for key in ("vertices", "elements"):
        if key not in out:
            raise MeshLoadError(f"mesh file has no '{key}' section")
    return out


def load_mesh(path: Union[str, Path]) -> Mesh:
    """Load a base mesh from a .json or brace-format .mesh file."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as exc:
        raise MeshLoadError(f"cannot read mesh file {path}: {exc}") from exc

    if path.suffix.lower() == ".json":
        try:
            desc = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MeshLoadError(f"{path}: invalid JSON: {exc}") from exc
    else:
        desc = parse_brace_mesh(text)

    if not isinstance(desc, dict):
        raise MeshLoadError(f"{path}: mesh description must be an object")
    return Mesh.from_description(desc)
