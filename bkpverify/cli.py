from __future__ import annotations

import argparse
import json as _json
import logging
import os
import sys
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

from bkpverify.constants import DEFAULT_ALGORITHM, DEFAULT_WORKERS
from bkpverify.errors import BkpVerifyError
from bkpverify.hashutil import SUPPORTED_ALGORITHMS
from bkpverify.models import Archive, VerificationStatus
from bkpverify.sidecar import SidecarStore
from bkpverify.status import display_state, load_verification_status, store_verification_status
from bkpverify.verify import record_archive, verify_archive, verify_checksums


def _archive(path: str) -> Archive:
    return Archive(name=Path(path).name, path=path)


def _status_doc(path: str, status: VerificationStatus) -> Dict[str, object]:
    return {
        "archive": path,
        "verified_at": status.verified_at.isoformat(),
        "is_verified": status.is_verified,
        "has_checksums": status.has_checksums,
        "errors": list(status.errors),
    }


def _print_status(path: str, status: VerificationStatus) -> None:
    print(f"{path}: {'OK' if status.is_verified else 'FAIL'}")
    for err in status.errors:
        print(f"  {err}")


def cmd_verify(
    archives: List[str],
    *,
    checksums: bool = False,
    workers: int = DEFAULT_WORKERS,
    metadata_dir: Optional[str] = None,
    store_status: bool = True,
    as_json: bool = False,
) -> bool:
    """Verify one or more archives.

    Args:
        archives: Archive paths.
        checksums: Also compare entries against the stored checksum manifest.
        workers: Per-archive entry worker count.
        metadata_dir: Sidecar directory override.
        store_status: Persist each result as the archive's verification status.
        as_json: Emit a JSON list instead of text.

    Returns:
        True if every archive verified.
    """
    store = SidecarStore(metadata_dir)
    results = []
    ok = True
    for path in archives:
        if checksums:
            status = verify_checksums(path, store=store, workers=workers)
        else:
            status = verify_archive(path, workers=workers)
        if store_status:
            store_verification_status(_archive(path), status, store=store)
        ok = ok and status.is_verified
        if as_json:
            results.append(_status_doc(path, status))
        else:
            _print_status(path, status)
    if as_json:
        print(_json.dumps(results, indent=2))
    return ok


def cmd_status(archives: List[str], *, metadata_dir: Optional[str] = None) -> None:
    store = SidecarStore(metadata_dir)
    for path in archives:
        status = load_verification_status(_archive(path), store=store)
        line = f"{path}: {display_state(status).value}"
        if status is not None:
            line += f" (checked {status.verified_at.isoformat()})"
        print(line)


def _entry_sources(archive: str, source_root: str) -> Dict[str, str]:
    with zipfile.ZipFile(archive) as zf:
        names = [i.filename for i in zf.infolist() if not i.is_dir()]
    return {name: os.path.join(source_root, *name.split("/")) for name in names}


def cmd_checksum(
    archive: str,
    source_root: str,
    *,
    algorithm: str = DEFAULT_ALGORITHM,
    verify: bool = False,
    metadata_dir: Optional[str] = None,
    workers: int = DEFAULT_WORKERS,
) -> bool:
    """Record checksums for the entries of an archive from their source files.

    Each file entry ``name`` is hashed from ``source_root/name``.

    Returns:
        False only when --verify was requested and verification failed.
    """
    store = SidecarStore(metadata_dir)
    try:
        file_map = _entry_sources(archive, source_root)
    except zipfile.BadZipFile as exc:
        raise ValueError(f"cannot list entries of {archive}: {exc}")
    status = record_archive(_archive(archive), file_map, algorithm, verify=verify, store=store, workers=workers)
    print(f"Recorded {len(file_map)} checksum(s) in {store.checksums_path(archive)}")
    if status is None:
        return True
    _print_status(archive, status)
    return status.is_verified


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="bkpverify",
        description="ZIP backup archive verification",
        epilog="Verification records are kept in a .metadata directory next to each archive.",
    )
    ap.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Diagnostic log level on stderr (default WARNING)",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_verify = sub.add_parser("verify", help="Verify archive integrity")
    ap_verify.add_argument("archives", nargs="+", help="Archive paths")
    ap_verify.add_argument("--checksums", action="store_true", help="Also compare against stored checksums")
    ap_verify.add_argument("--workers", "-j", type=int, default=DEFAULT_WORKERS, help="Entry workers per archive (default 1)")
    ap_verify.add_argument("--metadata-dir", help="Directory for verification records")
    ap_verify.add_argument("--no-store", action="store_true", help="Do not persist the verification status")
    ap_verify.add_argument("--json", action="store_true", help="Emit JSON result summary")

    ap_status = sub.add_parser("status", help="Show last verification state")
    ap_status.add_argument("archives", nargs="+", help="Archive paths")
    ap_status.add_argument("--metadata-dir", help="Directory for verification records")

    ap_sum = sub.add_parser("checksum", help="Record entry checksums from source files")
    ap_sum.add_argument("archive", help="Archive path")
    ap_sum.add_argument("--source-root", required=True, help="Directory holding the archived source files")
    ap_sum.add_argument(
        "--algorithm",
        default=DEFAULT_ALGORITHM,
        help=f"Digest algorithm ({', '.join(SUPPORTED_ALGORITHMS)}; default {DEFAULT_ALGORITHM})",
    )
    ap_sum.add_argument("--verify", action="store_true", help="Verify the archive after recording")
    ap_sum.add_argument("--metadata-dir", help="Directory for verification records")
    ap_sum.add_argument("--workers", "-j", type=int, default=DEFAULT_WORKERS, help="Entry workers (default 1)")

    args = ap.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")
    try:
        if args.cmd == "verify":
            success = cmd_verify(
                args.archives,
                checksums=args.checksums,
                workers=args.workers,
                metadata_dir=args.metadata_dir,
                store_status=not args.no_store,
                as_json=args.json,
            )
            sys.exit(0 if success else 1)
        elif args.cmd == "status":
            cmd_status(args.archives, metadata_dir=args.metadata_dir)
        elif args.cmd == "checksum":
            success = cmd_checksum(
                args.archive,
                args.source_root,
                algorithm=args.algorithm,
                verify=args.verify,
                metadata_dir=args.metadata_dir,
                workers=args.workers,
            )
            sys.exit(0 if success else 1)
        else:
            raise RuntimeError("Unknown command")
    except (BkpVerifyError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
