#!/usr/bin/env python3
"""
EDIFACT <-> BO4E Command Line Tool

Converts EDIFACT interchanges (UTILMD and friends) to BO4E JSON and back,
and validates them against MIG and AHB rules.

Usage:
    python main.py convert input.edi                      # -> input.json
    python main.py convert input.edi output.json --trace
    python main.py reverse input.json output.edi
    python main.py validate input.edi --pid 55001 --level full
    python main.py roundtrip input.edi
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Try importing from installed package first, fallback to src path
try:
    from batch import convert_batch
    from conversion_service import ConversionService
    from edifact_errors import EdifactError
    from validation_service import EdifactValidationService, ValidationLevel
except ImportError:
    # Add src to path for imports when not installed
    sys.path.insert(0, str(Path(__file__).parent / "src"))
    from batch import convert_batch
    from conversion_service import ConversionService
    from edifact_errors import EdifactError
    from validation_service import EdifactValidationService, ValidationLevel

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_SCHEMAS = str(BASE_DIR / "src" / "schemas")
DEFAULT_MAPPINGS = str(BASE_DIR / "src" / "mappings" / "utilmd")


def build_service(args) -> ConversionService:
    return ConversionService.from_paths(
        args.schemas,
        args.mappings,
        include_trace=getattr(args, "trace", False),
        filter_by_pid=getattr(args, "filter_pid", False),
    )


def cmd_convert(args) -> int:
    inputs = [Path(p) for p in args.input_files]
    if len(inputs) == 2 and inputs[1].suffix.lower() == ".json" and not args.output:
        args.output = str(inputs.pop())
    for path in inputs:
        if not path.exists():
            print(f"Error: Input file not found: {path}")
            return 1

    if len(inputs) > 1:
        results = convert_batch([p.read_bytes() for p in inputs], lambda: build_service(args), args.workers, args.timeout)
        failed = 0
        for path, result in zip(inputs, results):
            if result.ok:
                out = path.with_suffix(".json")
                out.write_text(json.dumps(result.data, indent=2, ensure_ascii=False), encoding="utf-8")
                print(f"{path} -> {out} ({result.duration_ms:.1f} ms)")
            else:
                failed += 1
                print(f"{path}: FAILED [{result.error_code}] {result.error}")
        return 1 if failed else 0

    input_path = inputs[0]
    output_path = Path(args.output) if args.output else input_path.with_suffix(".json")
    print(f"Converting {input_path}")
    print("=" * 50)
    result = build_service(args).convert_detailed(input_path.read_bytes())

    for message in result.interchange.messages:
        print(f"  Message {message.reference}: {message.message_type}, PID {message.pid or '-'}, "
              f"{len(message.transactions)} transaction(s), {len(message.passthrough)} passthrough segment(s)")
    if result.diagnostics:
        print(f"  Structure diagnostics: {len(result.diagnostics)}")
        for diagnostic in result.diagnostics[:5]:
            print(f"    - {diagnostic.message}")
    if result.issues:
        print(f"  Mapping issues: {len(result.issues)}")
        for issue in result.issues[:5]:
            print(f"    - [{issue.code}] {issue.entity}.{issue.field}: {issue.message}")

    json_output = result.to_json()
    output_path.write_text(json_output, encoding="utf-8")
    print(f"JSON output saved to: {output_path}")
    print(f"Output size: {len(json_output):,} characters")
    return 0


def cmd_reverse(args) -> int:
    input_path = Path(args.input_file)
    if not input_path.exists():
        print(f"Error: Input file not found: {input_path}")
        return 1
    output_path = Path(args.output) if args.output else input_path.with_suffix(".edi")
    edifact = build_service(args).reverse(input_path.read_text(encoding="utf-8"))
    output_path.write_text(edifact, encoding="utf-8")
    print(f"EDIFACT output saved to: {output_path}")
    return 0


def cmd_validate(args) -> int:
    input_path = Path(args.input_file)
    if not input_path.exists():
        print(f"Error: Input file not found: {input_path}")
        return 1
    service = EdifactValidationService(schema_base_path=args.schemas)
    report = service.validate_edifact(input_path.read_bytes(), pid=args.pid, level=ValidationLevel.parse(args.level))
    if report is None:
        print("Error: Validation produced no report")
        return 1

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    elif report.is_valid():
        print(f"EDIFACT is valid ({report.level.value}, PID {report.pruefidentifikator or '-'})")
    else:
        print(f"EDIFACT validation found {report.error_count()} error(s), {report.warning_count()} warning(s):")
        for i, issue in enumerate(report.issues[:20]):
            print(f"  {i + 1}. [{issue.code}] {issue.severity.value} at segment {issue.location.segment_number}: {issue.message}")
        if len(report.issues) > 20:
            print(f"  ... and {len(report.issues) - 20} more issues")
    return 0 if report.is_valid() else 2


def cmd_roundtrip(args) -> int:
    input_path = Path(args.input_file)
    if not input_path.exists():
        print(f"Error: Input file not found: {input_path}")
        return 1
    original = input_path.read_bytes().decode("utf-8").strip()
    rendered = build_service(args).roundtrip(original)
    if rendered == original:
        print("Round trip is byte-identical")
        return 0
    print("Round trip differs:")
    print(f"  original: {original}")
    print(f"  rendered: {rendered}")
    return 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert EDIFACT interchanges to BO4E JSON and back",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py convert utilmd.edi                    # -> utilmd.json
  python main.py convert a.edi b.edi c.edi --workers 4 # batch
  python main.py reverse utilmd.json utilmd_out.edi
  python main.py validate utilmd.edi --pid 55001 --level conditions
  python main.py roundtrip utilmd.edi
        """
    )
    parser.add_argument('--schemas', default=DEFAULT_SCHEMAS,
                        help=f'Directory with MIG/PID/AHB JSON files (default: {DEFAULT_SCHEMAS})')
    parser.add_argument('--mappings', default=DEFAULT_MAPPINGS,
                        help=f'Mapping directory with message/ and transaction/ (default: {DEFAULT_MAPPINGS})')
    parser.add_argument('--log-level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: WARNING)')
    sub = parser.add_subparsers(dest='command', required=True)

    convert = sub.add_parser('convert', help='EDIFACT -> BO4E JSON')
    convert.add_argument('input_files', nargs='+', help='Input EDIFACT file(s); "IN OUT.json" names the output')
    convert.add_argument('-o', '--output', help='Output JSON file (single input only)')
    convert.add_argument('--trace', action='store_true', help='Include the mapping trace')
    convert.add_argument('--filter-pid', action='store_true', help='Prune the tree to the PID schema before mapping')
    convert.add_argument('--workers', type=int, default=4, help='Worker threads for several inputs')
    convert.add_argument('--timeout', type=float, help='Batch timeout in seconds')
    convert.set_defaults(func=cmd_convert)

    reverse = sub.add_parser('reverse', help='BO4E JSON -> EDIFACT')
    reverse.add_argument('input_file', help='Input JSON file')
    reverse.add_argument('output', nargs='?', help='Output EDIFACT file (default: input_file.edi)')
    reverse.set_defaults(func=cmd_reverse)

    validate = sub.add_parser('validate', help='Validate against MIG and AHB')
    validate.add_argument('input_file', help='Input EDIFACT file')
    validate.add_argument('--pid', help='Pruefidentifikator (detected when omitted)')
    validate.add_argument('--level', default='full', help='structure | conditions | full (default: full)')
    validate.add_argument('--json', action='store_true', help='Print the report as JSON')
    validate.set_defaults(func=cmd_validate)

    roundtrip = sub.add_parser('roundtrip', help='Convert forth and back and compare')
    roundtrip.add_argument('input_file', help='Input EDIFACT file')
    roundtrip.set_defaults(func=cmd_roundtrip)
    return parser


def main(argv=None) -> int:
    """Main entry point with command line argument parsing."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    try:
        return args.func(args)
    except EdifactError as e:
        print(f"Error [{e.code}]: {e.message}")
        return 1
    except ValueError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
