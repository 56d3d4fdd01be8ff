from __future__ import annotations

import math
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Mapping


class CandList(Enum):
    """
    Predefined lists of element refinement candidates.

      P_ISO       p-elevation, same increment in both directions
      P_ANISO     p-elevation, independent increments
      H_ISO       isotropic split, sons keep the parent order
      H_ANISO     H_ISO + anisotropic splits
      HP_ISO      P_ISO + H_ISO + isotropic split with re-distributed orders
      HP_ANISO_H  HP_ISO + anisotropic splits
      HP_ANISO_P  HP_ISO + anisotropic orders
      HP_ANISO    everything
    """

    P_ISO = "P_ISO"
    P_ANISO = "P_ANISO"
    H_ISO = "H_ISO"
    H_ANISO = "H_ANISO"
    HP_ISO = "HP_ISO"
    HP_ANISO_H = "HP_ANISO_H"
    HP_ANISO_P = "HP_ANISO_P"
    HP_ANISO = "HP_ANISO"

    @property
    def allows_p(self) -> bool:
        return self not in (CandList.H_ISO, CandList.H_ANISO)

    @property
    def allows_h(self) -> bool:
        return self not in (CandList.P_ISO, CandList.P_ANISO)

    @property
    def allows_hp(self) -> bool:
        return self.name.startswith("HP_")

    @property
    def aniso_p(self) -> bool:
        return self in (CandList.P_ANISO, CandList.HP_ANISO_P, CandList.HP_ANISO)

    @property
    def aniso_h(self) -> bool:
        return self in (CandList.H_ANISO, CandList.HP_ANISO_H, CandList.HP_ANISO)


STRATEGIES = (0, 1, 2)


@dataclass(frozen=True)
class AdaptConfig:
    """
    Immutable tunables of one adaptive run.

    threshold:
        STRATEGY 0 ... refine elements until sqrt(threshold) times the total
                       (squared) error is processed; elements with similar
                       errors are refined together to keep the mesh symmetric.
        STRATEGY 1 ... refine elements with error >= threshold * max error.
        STRATEGY 2 ... refine elements with error >= threshold (absolute).
    mesh_regularity:
        -1 for arbitrary-level hanging nodes, k >= 1 for at most k levels.
    conv_exp:
        exponent of the added-DOF cost in the candidate score.
    err_stop:
        stop when the estimated relative error (percent) drops below it.
    ndof_stop:
        stop when the coarse space has at least this many DOF.
    solve_on_coarse_mesh:
        if False, the coarse solution is the projection of the fine one.
    """

    init_ref_num: int = 1
    p_init: int = 4
    threshold: float = 0.3
    strategy: int = 0
    cand_list: CandList = CandList.HP_ANISO_H
    mesh_regularity: int = -1
    conv_exp: float = 1.0
    err_stop: float = 0.01
    ndof_stop: int = 60000
    solve_on_coarse_mesh: bool = False
    max_order: int = 9

    def __post_init__(self) -> None:
        if int(self.init_ref_num) < 0:
            raise ValueError("AdaptConfig: init_ref_num must be >= 0.")
        if int(self.p_init) < 1:
            raise ValueError("AdaptConfig: p_init must be >= 1.")
        if int(self.max_order) < int(self.p_init):
            raise ValueError("AdaptConfig: max_order must be >= p_init.")
        if int(self.strategy) not in STRATEGIES:
            raise ValueError(f"AdaptConfig: strategy must be one of {STRATEGIES}.")
        thr = float(self.threshold)
        if math.isnan(thr) or thr < 0.0:
            raise ValueError("AdaptConfig: threshold must be >= 0.")
        if int(self.strategy) in (0, 1) and thr > 1.0:
            raise ValueError("AdaptConfig: threshold must lie in [0, 1] for strategies 0 and 1.")
        if not isinstance(self.cand_list, CandList):
            raise ValueError(f"AdaptConfig: cand_list must be a CandList, got {self.cand_list!r}.")
        if int(self.mesh_regularity) == 0 or int(self.mesh_regularity) < -1:
            raise ValueError("AdaptConfig: mesh_regularity must be -1 (unbounded) or >= 1.")
        if not float(self.conv_exp) > 0.0:
            raise ValueError("AdaptConfig: conv_exp must be > 0.")
        if not float(self.err_stop) >= 0.0:
            raise ValueError("AdaptConfig: err_stop must be >= 0.")
        if int(self.ndof_stop) < 1:
            raise ValueError("AdaptConfig: ndof_stop must be >= 1.")

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "AdaptConfig":
        """
        Build a config from a mapping. Keys may be given as in the classic
        driver constants (INIT_REF_NUM, CAND_LIST, ...) or in lower case.
        """
        names = {f.name for f in fields(cls)}
        kw: dict[str, Any] = {}
        for key, value in d.items():
            name = str(key).lower()
            if name not in names:
                raise ValueError(f"AdaptConfig.from_dict: unknown key '{key}'.")
            if name == "cand_list" and not isinstance(value, CandList):
                value = CandList(str(value).upper())
            kw[name] = value
        return cls(**kw)
