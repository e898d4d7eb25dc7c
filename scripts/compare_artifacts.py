#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
import tempfile
from pathlib import Path

import verify


def parse_zero_range(value: str) -> tuple[int, int]:
    token = value.strip()
    if ":" not in token:
        raise ValueError(f"Zero range must look like OFFSET:LENGTH, got {value!r}")
    offset, length = token.split(":", 1)
    return int(offset, 0), int(length, 0)


def build_steps(args: argparse.Namespace) -> list[dict]:
    if args.product:
        product = verify.resolve_product(args.product, verify.PRODUCTS)
        return list(product.get("normalize") or [])

    if args.mode == "directory":
        return [{"op": "unzip"}]

    side = args.side
    steps: list[dict] = []
    if args.header_total:
        steps.append({"op": "header_total", "side": side})
    if args.strip is not None:
        steps.append({"op": "strip", "offset": args.strip, "side": side})
    for value in args.zero:
        offset, length = parse_zero_range(value)
        steps.append({"op": "zero", "offset": offset, "length": length, "side": side})
    return steps


def compare_files(
    built_path: Path,
    reference_path: Path,
    steps: list[dict],
    ignore_patterns: list[str],
    review_patterns: list[str],
    work_dir: Path,
) -> verify.ComparisonResult:
    built = verify.describe_artifact(built_path)
    reference = verify.describe_artifact(reference_path)
    product = {"normalize": steps, "ignore": ignore_patterns, "review": review_patterns}
    return verify.compare_artifacts(built, reference, product, work_dir)


def local_target(args: argparse.Namespace, steps: list[dict]) -> verify.VerificationTarget:
    directory = verify.normalization_mode(steps) == "directory"
    key = args.product or "local"
    return verify.VerificationTarget(
        product=key,
        name=verify.PRODUCTS.get(key, {}).get("name", key),
        kind="apk" if directory else "firmware",
        version=args.version or "unknown",
        repo="",
        tag="",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Compare a locally built artifact against an official one without cloning or building, "
            "applying the same normalization steps the verifier uses."
        )
    )
    parser.add_argument("--built", required=True, help="Path to the artifact you built")
    parser.add_argument("--reference", required=True, help="Path to the official artifact")
    parser.add_argument("--product", help="Use the normalization of a known product, e.g. bitbox02")
    parser.add_argument(
        "--mode",
        choices=["binary", "directory"],
        default="binary",
        help="binary compares normalized bytes, directory compares extracted archive contents",
    )
    parser.add_argument("--header-total", action="store_true", help="Cut at the size declared by a TRZF/OKTV header")
    parser.add_argument("--strip", type=lambda value: int(value, 0), default=None, help="Drop this many leading bytes")
    parser.add_argument(
        "--zero",
        action="append",
        default=[],
        help="Zero OFFSET:LENGTH bytes before hashing (repeatable), e.g. 1983:65",
    )
    parser.add_argument(
        "--side",
        choices=["both", "built", "reference"],
        default="both",
        help="Which side the --header-total/--strip/--zero steps apply to",
    )
    parser.add_argument(
        "--ignore",
        action="append",
        default=[],
        help="Regex of diff lines to ignore in directory mode (repeatable, default META-INF)",
    )
    parser.add_argument(
        "--review",
        action="append",
        default=[],
        help="Regex of diff lines that only need manual review in directory mode (repeatable)",
    )
    parser.add_argument("--version", help="Version recorded in the results file")
    parser.add_argument("--architecture", default="", help="Architecture recorded in the results file")
    parser.add_argument("--results-file", help="Write a YAML results document to this path")
    parser.add_argument("--work-dir", help="Where normalized copies are written (default: a temp dir)")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    built_path = Path(args.built)
    reference_path = Path(args.reference)
    for label, path in (("Built artifact", built_path), ("Reference artifact", reference_path)):
        if not path.is_file():
            parser.error(f"{label} does not exist: {path}")
    if args.strip is not None and args.strip < 0:
        parser.error("--strip must be >= 0")
    explicit_steps = args.header_total or args.strip is not None or args.zero
    if args.product and (explicit_steps or args.mode != "binary"):
        parser.error("--product cannot be combined with explicit normalization options")
    if args.mode == "directory" and explicit_steps:
        parser.error("--mode directory cannot be combined with --header-total/--strip/--zero")

    try:
        steps = build_steps(args)
    except (ValueError, verify.VerificationError) as error:
        parser.error(str(error))

    ignore_patterns = args.ignore or list(verify.DEFAULT_IGNORE_PATTERNS)
    try:
        if args.work_dir:
            result = compare_files(built_path, reference_path, steps, ignore_patterns, args.review, Path(args.work_dir))
        else:
            with tempfile.TemporaryDirectory() as temp_dir:
                result = compare_files(built_path, reference_path, steps, ignore_patterns, args.review, Path(temp_dir))
    except verify.VerificationError as error:
        print(f"[FAIL] {error}", file=sys.stderr)
        return 2

    if args.results_file:
        target = local_target(args, steps)
        architecture = args.architecture or verify.PRODUCTS.get(target.product, {}).get("architecture", "")
        document = verify.build_results_document(target, result, reference_path.name, architecture)
        verify.write_results_file(args.results_file, document)

    if result.verdict == verify.VERDICT_REPRODUCIBLE:
        print(f"[OK] Artifacts match: {built_path} == {reference_path}")
        return 0

    print(f"[FAIL] verdict={result.verdict}", file=sys.stderr)
    for line in (*result.differences, *result.diagnostics):
        print(f"  {line}", file=sys.stderr)
    return verify.exit_code_for(result.verdict)


if __name__ == "__main__":
    raise SystemExit(main())
