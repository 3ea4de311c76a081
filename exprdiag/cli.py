from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from exprdiag.config import load_config
from exprdiag.errors import ConfigError, DiagnosticsError
from exprdiag.log_utils import setup_logger
from exprdiag.pipeline import DiagnosticsPipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="exprdiag",
                                 description="Monte Carlo feasibility diagnostics for expression trigger conditions")
    ap.add_argument("expression", help="Expression definition (JSON or YAML)")
    ap.add_argument("--emotions", help="Emotion prototype lookup table (JSON or YAML)")
    ap.add_argument("--sexual", help="Sexual-state prototype lookup table (JSON or YAML)")
    ap.add_argument("--regime", help="Mood regime definition; inferred from the expression when omitted")
    ap.add_argument("--samples", "-n", type=int, default=None, help="Override simulation.sample_count")
    ap.add_argument("--seed", type=int, default=None, help="Override simulation.seed")
    ap.add_argument("--output", "-o", help="Write the markdown report here instead of stdout")
    ap.add_argument("--json", dest="json_path", help="Also dump the structured results to this file")
    ap.add_argument("--exprdiag_config", dest="config_path", help="Path to config.yaml")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config_path).with_simulation_overrides(sample_count=args.samples, seed=args.seed)
    except DiagnosticsError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    setup_logger(config.logging)

    try:
        pipeline = DiagnosticsPipeline.from_files(args.emotions, args.sexual, config=config,
                                                  logger=logging.getLogger("exprdiag"))
        expression = pipeline.load_expression(args.expression)
        regime = pipeline.load_regime(args.regime) if args.regime else None
        report = pipeline.run(expression, regime)
    except ConfigError as e:
        # unreadable or invalid input files
        logger.error(f"Invalid input: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 2
    except DiagnosticsError as e:
        logger.error(f"Diagnostics failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1

    if args.output:
        Path(args.output).write_text(report.markdown, encoding="utf-8")
        logger.info(f"Report written to {args.output}")
    else:
        print(report.markdown)
    if args.json_path:
        with open(args.json_path, "w", encoding="utf-8") as f:
            json.dump(report.model_dump(mode="json", exclude={"markdown"}), f, indent=2)
    return 0


if __name__ == "__main__":
    sys.exit(main())
