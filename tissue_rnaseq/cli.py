"""
Command line interface.

Usage:
    tissue-rnaseq --create-sample -i ./data
    tissue-rnaseq -i ./data -o ./results -c ./data/config.json
    tissue-rnaseq -i ./data -o ./results --tissues liver --ontology BP MF
    tissue-rnaseq -i ./data -o ./results --run-dir ./results/run_20240101_120000 --from-agent agent5_enrichment
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from .backends import BACKEND_NAMES
from .config import load_config
from .orchestrator import TissueRNAseqPipeline, create_sample_data
from .agents.agent5_enrichment import ONTOLOGY_LIBRARIES


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tissue-rnaseq",
        description="Per-tissue genotype x treatment RNA-seq analysis pipeline"
    )
    parser.add_argument("--input", "-i", required=True, help="Input directory")
    parser.add_argument("--output", "-o", help="Output directory")
    parser.add_argument("--config", "-c", help="JSON config file")
    parser.add_argument("--backend", choices=BACKEND_NAMES, help="DE backend")
    parser.add_argument("--tissues", nargs="+", help="Tissues to analyse (default: all)")
    parser.add_argument("--ontology", nargs="+", choices=sorted(ONTOLOGY_LIBRARIES),
                        help="GO ontologies for enrichment")
    parser.add_argument("--n-jobs", type=int, help="Tissues fitted in parallel")
    parser.add_argument("--agent", choices=TissueRNAseqPipeline.AGENT_ORDER, help="Run specific agent only")
    parser.add_argument("--from-agent", choices=TissueRNAseqPipeline.AGENT_ORDER,
                        help="Resume from specific agent")
    parser.add_argument("--stop-after", choices=TissueRNAseqPipeline.AGENT_ORDER,
                        help="Stop after specific agent")
    parser.add_argument("--run-dir", help="Existing run directory to reuse with --agent/--from-agent")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data in --input")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug output on the console")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.create_sample:
        create_sample_data(Path(args.input))
        return 0

    if not args.output:
        print("error: --output is required unless --create-sample is given", file=sys.stderr)
        return 1

    config_path = args.config
    if config_path is None and (Path(args.input) / "config.json").exists():
        config_path = Path(args.input) / "config.json"

    try:
        config = load_config(
            config_path,
            overrides={
                "de_backend": args.backend,
                "tissues": args.tissues,
                "ontologies": args.ontology,
                "n_jobs": args.n_jobs,
                "verbose": args.verbose or None,
            }
        )
    except (OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    pipeline = TissueRNAseqPipeline(
        input_dir=Path(args.input),
        output_dir=Path(args.output),
        config=config,
        run_dir=Path(args.run_dir) if args.run_dir else None
    )

    if args.agent:
        try:
            pipeline.run_agent(args.agent)
        except Exception as e:
            print(f"error: {args.agent} failed: {e}", file=sys.stderr)
            return 1
    elif args.from_agent:
        pipeline.run_from(args.from_agent)
    else:
        pipeline.run(stop_after=args.stop_after)

    return 0 if pipeline.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
