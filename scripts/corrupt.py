from __future__ import annotations

import argparse
import sys
from typing import Optional

from bkpverify.corrupt import CorruptedArchiveResult, CorruptionType, inject_corruption
from bkpverify.errors import BkpVerifyError
from bkpverify.verify import collect_findings


def _report(result: CorruptedArchiveResult, verify: bool) -> None:
    print(f"{result.path}: {result.spec.description}")
    if not verify:
        return
    findings = collect_findings(result.path)
    if not findings:
        print("  verifies (corruption not detected)")
    for f in findings:
        print(f"  [{f.layer.name.lower()}] {f}")


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(prog="bkpverify.corrupt", description="Corrupt copies of ZIP archives for testing")
    ap.add_argument("archive", help="Known-good archive (left untouched)")
    kind = ap.add_mutually_exclusive_group(required=True)
    kind.add_argument("--type", dest="ctype", choices=[t.value for t in CorruptionType], help="Corruption to inject")
    kind.add_argument("--all", action="store_true", help="Write one copy per corruption type")
    ap.add_argument("--seed", type=int, default=0, help="PRNG seed for reproducibility (default 0)")
    ap.add_argument("--length", type=int, default=None, help="Bytes to flip or zero (payload-bytes, zero-fill)")
    ap.add_argument("--output", help="Path of the corrupted copy (single type only)")
    ap.add_argument("--verify", action="store_true", help="Run verification on each corrupted copy")
    args = ap.parse_args(argv)

    if args.all and args.output:
        ap.error("--output cannot be combined with --all")
    types = list(CorruptionType) if args.all else [CorruptionType(args.ctype)]
    failed = False
    for ctype in types:
        try:
            result = inject_corruption(args.archive, ctype, args.seed, args.output, length=args.length)
            _report(result, args.verify)
        except (BkpVerifyError, OSError, ValueError) as e:
            print(f"Error: {ctype.value}: {e}", file=sys.stderr)
            failed = True
    if failed:
        sys.exit(2)


if __name__ == "__main__":
    main()
