"""CLI entry point for lesion-analytics."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import MappingConfig
from .core import METHOD_REGISTRY, LesionMapper, method_description
from .stats import CORRECTIONS


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def cmd_run(args):
    """Run a mapping and save its outputs."""
    config = MappingConfig.from_yaml(args.config)
    if args.output_dir is not None:
        config.output_dir = args.output_dir
    config.check()
    mapper = LesionMapper(config)

    print(f"Analysis: {config.name}")
    print(f"Subjects: {mapper.lesions.n_subjects}")
    print(f"Method: {config.method}, correction: {config.correction}")
    print()

    result = mapper.run()
    written = mapper.save(result)
    if result.null_result:
        print(f"\nNull result: {result.message}")
    else:
        print(f"\nSignificant columns: {result.n_significant} of {result.n_columns}")
    print(f"Done. Output: {config.output_dir} ({len(written)} files)")


def cmd_validate(args):
    """Validate a mapping configuration."""
    config = MappingConfig.from_yaml(args.config)
    issues = config.validate()

    print(f"Analysis: {config.name}")
    print(f"Config: {args.config}")
    print(f"Lesion files: {len(config.lesion_paths())}")
    print(f"Method: {config.method}")
    print(f"Correction: {config.correction} (p < {config.p_threshold})")
    if config.correction in ("FWERperm", "clusterPerm"):
        print(f"Permutations: {config.n_permutations}")
    if config.options:
        print("Options:")
        for key, value in config.options.items():
            print(f"  {key}: {value}")

    if issues:
        print(f"\nProblems ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)
    else:
        print("\nValidation passed.")


def cmd_list(args):
    """List available methods and corrections."""
    print("Available methods:")
    for name in METHOD_REGISTRY:
        print(f"  {name}: {method_description(name)}")
    print("\nAvailable corrections:")
    print(f"  {', '.join(CORRECTIONS)}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="lesion-analytics",
        description="Lesion-to-symptom mapping with patch aggregation and permutation correction",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Run a mapping")
    p_run.add_argument("--config", required=True, type=Path, help="Path to mapping YAML config")
    p_run.add_argument("--output-dir", type=Path, default=None, help="Override output_dir")
    p_run.set_defaults(func=cmd_run)

    # validate
    p_val = subparsers.add_parser("validate", help="Validate mapping config")
    p_val.add_argument("--config", required=True, type=Path, help="Path to mapping YAML config")
    p_val.set_defaults(func=cmd_validate)

    # list
    p_list = subparsers.add_parser("list", help="List available methods and corrections")
    p_list.set_defaults(func=cmd_list)

    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
