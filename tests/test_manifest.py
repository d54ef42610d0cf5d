import json
import subprocess
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from breach_trends.bootstrap import BootstrapParams
from breach_trends.loader import LoadParams
from breach_trends.main import (
    TrendParams,
    _orchestrate,
    build_manifest_dict,
    build_run_identity,
    get_default_params,
    main,
)
from breach_trends.quantile_model import QuantileSolver
from breach_trends.records import ReferenceRule
from breach_trends.utils import canonical_json_hash, sanitize_for_json, utc_timestamp_seconds
from breach_trends.validation import synthesize_breach_records


def _write_synthetic_csv(tmp_path: Path, n: int = 150, seed: int = 8) -> Path:
    df = synthesize_breach_records(n, seed=seed).to_frame()
    df = df.drop(columns=["log_total_amount"])
    df["breach_date"] = df["breach_date"].dt.strftime("%Y-%m-%d")
    path = tmp_path / "breaches.csv"
    df.to_csv(path, index=False)
    return path


def test_canonical_hash_ignores_key_order():
    a = {"x": 1, "y": {"b": 2, "a": [1, 2]}}
    b = {"y": {"a": [1, 2], "b": 2}, "x": 1}
    assert canonical_json_hash(a) == canonical_json_hash(b)
    short, full = canonical_json_hash(a)
    assert len(short) == 8 and full.startswith(short)


def test_sanitize_for_json_handles_params():
    out = sanitize_for_json(
        {
            "trend": TrendParams(),
            "seed": np.int64(4),
            "causes": {"b", "a"},
        }
    )
    assert out["trend"]["reference_rule"] == "FIRST_SEEN"
    assert out["trend"]["solver"] == "HIGHS"
    assert out["trend"]["taus"] == [0.5, 0.95]
    assert out["seed"] == 4
    assert out["causes"] == ["a", "b"]
    json.dumps(out)


def test_utc_timestamp_format():
    ts = utc_timestamp_seconds()
    assert ts.endswith("Z") and "T" in ts and len(ts) == 20


def test_run_identity_changes_with_parameters(tmp_path: Path):
    load = LoadParams(csv_path=tmp_path / "x.csv")
    _, trend, boot = get_default_params()
    _, short_a, _, params = build_run_identity(load, trend, boot)
    _, short_b, _, _ = build_run_identity(
        load, TrendParams(solver=QuantileSolver.IRLS), boot
    )
    assert short_a != short_b
    assert params["load"]["csv_path"].endswith("x.csv")
    assert params["bootstrap"]["n_iterations"] == 1000


def test_build_manifest_dict():
    manifest = build_manifest_dict(
        abs_input_posix="/data/breaches.csv",
        record_count=42,
        effective_params={"trend": {"taus": [0.5]}},
        hashes=("abcd1234", "abcd1234ffff"),
        bootstrap_diagnostics={
            "requested": 10,
            "attempted": 10,
            "succeeded": 9,
            "failed": 1,
            "seed_used": 77,
        },
        artifact_paths=["trends-abcd1234.csv"],
    )
    assert manifest["version"] == "1"
    assert manifest["record_count"] == 42
    assert manifest["bootstrap"]["failed"] == 1
    assert manifest["bootstrap"]["seed_used"] == 77
    assert manifest["canonical_hash_short"] == "abcd1234"
    assert manifest["artifacts"] == ["trends-abcd1234.csv"]


def test_orchestrate_writes_artifacts(tmp_path: Path):
    csv_path = _write_synthetic_csv(tmp_path)
    report = _orchestrate(
        LoadParams(csv_path=csv_path),
        TrendParams(taus=(0.5,), reference_rule=ReferenceRule.FIRST_SEEN),
        BootstrapParams(n_iterations=8, random_seed=3, n_workers=1),
        output_base=str(tmp_path / "out"),
    )
    assert report.reference_cause == "B"
    run_dirs = list((tmp_path / "out").iterdir())
    assert len(run_dirs) == 1
    files = {p.name.split("-")[0] for p in run_dirs[0].iterdir()}
    assert files == {"trends", "bootstrap", "report", "manifest"}
    svgs = list(run_dirs[0].glob("trends-*.svg"))
    assert len(svgs) == 1

    manifest_path = next(run_dirs[0].glob("manifest-*.json"))
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    assert manifest["record_count"] == 150
    assert manifest["bootstrap"]["seed_used"] == 3
    assert len(manifest["artifacts"]) == 4

    trends = pd.read_csv(next(run_dirs[0].glob("trends-*.csv")))
    assert trends["cause"].tolist() == ["A"]
    samples = pd.read_csv(next(run_dirs[0].glob("bootstrap-*.csv")))
    assert list(samples.columns) == ["iteration", "cause", "tau", "raw_slope"]
    assert len(samples) == 8 * 2


def test_cli_print_defaults(capsys):
    main(["--print-defaults"])
    out = json.loads(capsys.readouterr().out)
    assert out["trend"]["taus"] == [0.5, 0.95]
    assert out["trend"]["reference_rule"] == "FIRST_SEEN"
    assert out["bootstrap"]["n_iterations"] == 1000


def test_cli_missing_file_exits_2(tmp_path: Path):
    with pytest.raises(SystemExit) as exc:
        main(["--csv-path", str(tmp_path / "missing.csv"), "--workers", "1"])
    assert exc.value.code == 2


def test_cli_requires_csv_path():
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 2


def test_cli_bad_header_map_exits_2(tmp_path: Path):
    csv_path = _write_synthetic_csv(tmp_path, n=40)
    with pytest.raises(SystemExit) as exc:
        main(["--csv-path", str(csv_path), "--header-map", "nocolon"])
    assert exc.value.code == 2


def test_cli_end_to_end(tmp_path: Path, capsys):
    csv_path = _write_synthetic_csv(tmp_path)
    main(
        [
            "--csv-path",
            str(csv_path),
            "--tau",
            "0.5",
            "--iterations",
            "6",
            "--seed",
            "9",
            "--workers",
            "1",
            "--no-plot",
            "--output-dir",
            str(tmp_path / "cli-out"),
        ]
    )
    out = capsys.readouterr().out
    assert "Reference cause: B" in out
    run_dir = next((tmp_path / "cli-out").iterdir())
    assert not list(run_dir.glob("*.svg"))


@pytest.mark.parametrize("mode", ["script", "module"])
def test_cli_entry_runs_as_script_and_module(mode):
    root = Path(__file__).resolve().parents[1]
    if mode == "script":
        cmd = [sys.executable, str(root / "breach_trends" / "main.py"), "--print-defaults"]
    else:
        cmd = [sys.executable, "-m", "breach_trends.main", "--print-defaults"]
    proc = subprocess.run(cmd, cwd=root, capture_output=True, text=True, timeout=120)
    assert proc.returncode == 0, proc.stderr
    assert json.loads(proc.stdout)["bootstrap"]["n_iterations"] == 1000
