# ihtcv/cli/run_cv.py
from __future__ import annotations

import argparse
import datetime as _dt
import json
import logging
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List

import yaml

from ihtcv.experiments.runner import run_cv_experiment
from ihtcv.utils.config_parser import load_and_merge
from ihtcv.utils.logging_utils import log_config, setup_logging


def _verbosity_level(verbosity: int) -> int:
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def _save_resolved_config(cfg: Dict[str, Any], out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    with (out_dir / "resolved_config.yaml").open("w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False, allow_unicode=True)


def _timestamp() -> str:
    return _dt.datetime.now().strftime("%Y%m%d-%H%M%S")


def _derive_run_dir(base_out: Path, exp_name: str | None) -> Path:
    tag = exp_name if exp_name else "cv"
    return base_out / f"{tag}-{_timestamp()}"


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Cross-validate the sparsity level of an IHT model from YAML config.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        nargs="+",
        type=str,
        required=True,
        help="One or more YAML config files (merged from left to right).",
    )
    parser.add_argument(
        "--override",
        "-o",
        nargs="*",
        default=[],
        help="Override config keys: e.g., cv.q=5 cv.axis=fold model.family=bernoulli",
    )
    parser.add_argument(
        "--outdir",
        type=str,
        default="outputs/runs",
        help="Base output directory for this run.",
    )
    parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Experiment name tag used in run directory naming.",
    )
    parser.add_argument(
        "--verbosity",
        "-v",
        action="count",
        default=0,
        help="Increase logging verbosity (-v INFO, -vv DEBUG).",
    )

    args = parser.parse_args(argv)

    try:
        cfg_paths = [Path(p).expanduser().resolve() for p in args.config]
        for p in cfg_paths:
            if not p.exists():
                raise FileNotFoundError(f"Config not found: {p}")

        resolved_cfg = load_and_merge(cfg_paths, args.override or [])
        name = args.name or resolved_cfg.get("name")

        base_out = Path(args.outdir).expanduser().resolve()
        run_dir = _derive_run_dir(base_out, name)
        resolved_cfg.setdefault("io", {})
        resolved_cfg["io"]["run_dir"] = str(run_dir)

        _save_resolved_config(resolved_cfg, run_dir)
        logger = setup_logging(_verbosity_level(args.verbosity), log_file=str(run_dir / "run.log"))
        log_config(logger, resolved_cfg)

        metrics = run_cv_experiment(resolved_cfg, run_dir)

        with (run_dir / "metrics.json").open("w", encoding="utf-8") as f:
            json.dump(metrics, f, indent=2, ensure_ascii=False)

        print(f"[OK] Run finished. Artifacts in: {run_dir}")
        return 0
    except Exception:  # pragma: no cover
        print("[FATAL] Cross-validation failed:\n", file=sys.stderr)
        traceback.print_exc()
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
