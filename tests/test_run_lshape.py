import importlib.util
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parents[1] / "experiments" / "run_lshape.py"


@pytest.fixture
def driver():
    spec = importlib.util.spec_from_file_location("run_lshape", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_driver_writes_final_solution_plot(tmp_path, driver):
    code = driver.main(
        ["--outdir", str(tmp_path), "--p-init", "1", "--init-ref-num", "0",
         "--err-stop", "50", "--ndof-stop", "100", "--plots"]
    )
    assert code in (0, 1)
    assert (tmp_path / "fields" / "solution.npz").exists()
    assert (tmp_path / "figs" / "final_solution.png").stat().st_size > 0
    assert (tmp_path / "figs" / "solution_001.png").exists()


def test_driver_without_plots_skips_figures(tmp_path, driver):
    code = driver.main(["--outdir", str(tmp_path), "--p-init", "1", "--init-ref-num", "0", "--ndof-stop", "1"])
    assert code == 1
    assert not (tmp_path / "figs").exists()


def test_driver_missing_mesh(tmp_path, driver):
    missing = tmp_path / "missing.mesh"
    assert driver.main(["--mesh", str(missing), "--outdir", str(tmp_path / "out")]) == driver.EXIT_MESH_FAILED
