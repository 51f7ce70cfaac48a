"""
``verifactu`` command line.

Usage:
  verifactu [--config PATH] init-db
  verifactu [--config PATH] [--gateway MODULE:ATTR] run-worker [--business ID] [--loop]
  verifactu [--config PATH] check-certificates [--refresh]
  verifactu [--config PATH] verify-chain BUSINESS_ID
  verifactu [--config PATH] stats [--business ID]
  verifactu [--config PATH] requeue BUSINESS_ID RECORD_ID
  verifactu [--config PATH] export BUSINESS_ID INVOICE_ID [--output PATH]
  verifactu [--config PATH] apply-preset BUSINESS_ID PRESET

Settings come from ``verifactu_config.get_active_settings()``.  Results are
printed as JSON on stdout; logs go to stderr.  Exit status is 0 on success,
1 on a reported problem (broken chain, failed records, expired
certificates) and 2 on an error.
"""

from __future__ import annotations

import argparse
import dataclasses
import importlib
import json
import sys
from pathlib import Path
from typing import Any
from uuid import UUID

from verifactu_kernel.db.engine import create_tables
from verifactu_kernel.exceptions import VerifactuKernelError
from verifactu_kernel.logging_config import configure_logging

from verifactu_batch.domain.types import BusinessRunReport, WorkerRunReport
from verifactu_batch.runtime import ComplianceRuntime, build_runtime
from verifactu_batch.services.gateway import LoopbackGateway, SubmissionGateway
from verifactu_config import get_active_settings

DEFAULT_GATEWAY = "verifactu_batch.services.gateway:LoopbackGateway"


def load_gateway(path: str) -> SubmissionGateway:
    """Import ``module:attr`` (or ``module.attr``) and instantiate it if callable."""
    module_name, sep, attr = path.partition(":")
    if not sep:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Gateway must be given as module:attribute, got {path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    if isinstance(target, type):
        gateway = target()
    elif hasattr(target, "submit"):
        gateway = target
    elif callable(target):
        gateway = target()
    else:
        gateway = target
    if not hasattr(gateway, "submit"):
        raise ValueError(f"{path} does not provide a submit() method")
    return gateway


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        data = dataclasses.asdict(value)
        for name in ("total", "processed", "succeeded", "failed"):
            prop = getattr(type(value), name, None)
            if isinstance(prop, property):
                data[name] = getattr(value, name)
        return data
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    return value


def _print(value: Any) -> None:
    print(json.dumps(_to_jsonable(value), indent=2, sort_keys=True, default=str))


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="verifactu", description="VERI*FACTU invoice reporting")
    p.add_argument("--config", type=Path, default=None, help="Settings override file (default: $VERIFACTU_CONFIG)")
    p.add_argument(
        "--gateway",
        default=DEFAULT_GATEWAY,
        help=f"Submission gateway as module:attribute (default: {DEFAULT_GATEWAY})",
    )
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the reporting tables")

    run = sub.add_parser("run-worker", help="Submit pending records")
    run.add_argument("--business", type=UUID, default=None, help="Only this business")
    run.add_argument("--loop", action="store_true", help="Keep running on the scheduler interval")

    certs = sub.add_parser("check-certificates", help="Classify signing certificates")
    certs.add_argument("--refresh", action="store_true", help="Re-read certificate files first")

    verify = sub.add_parser("verify-chain", help="Replay a business's hash chain")
    verify.add_argument("business_id", type=UUID)

    stats = sub.add_parser("stats", help="Transmission statistics")
    stats.add_argument("--business", type=UUID, default=None)

    requeue = sub.add_parser("requeue", help="Move an errored record back to pending")
    requeue.add_argument("business_id", type=UUID)
    requeue.add_argument("record_id", type=UUID)

    export = sub.add_parser("export", help="Write the validated XML of an invoice")
    export.add_argument("business_id", type=UUID)
    export.add_argument("invoice_id")
    export.add_argument("--output", type=Path, default=None, help="File or directory (default: stdout)")

    preset = sub.add_parser("apply-preset", help="Apply a worker preset to a business")
    preset.add_argument("business_id", type=UUID)
    preset.add_argument("preset")

    return p.parse_args(argv)


def _run_command(args: argparse.Namespace, runtime: ComplianceRuntime) -> int:
    admin = runtime.admin

    if args.command == "init-db":
        create_tables(runtime.engine)
        print("tables created", file=sys.stderr)
        return 0

    if args.command == "run-worker":
        if args.loop:
            runtime.scheduler.start()
            try:
                while runtime.scheduler.is_running:
                    runtime.scheduler.stop_event.wait(timeout=1.0)
            except KeyboardInterrupt:
                pass
            finally:
                runtime.scheduler.stop()
            return 0
        report: BusinessRunReport | WorkerRunReport = admin.run_worker(args.business)
        _print(report)
        return 1 if report.failed else 0

    if args.command == "check-certificates":
        result = admin.check_certificates(refresh=args.refresh)
        _print(result)
        return 1 if result.summary.get("expired") else 0

    if args.command == "verify-chain":
        result = admin.verify_chain(args.business_id)
        _print(result)
        return 0 if result.valid else 1

    if args.command == "stats":
        _print(admin.stats(args.business))
        return 0

    if args.command == "requeue":
        _print(admin.requeue(args.business_id, args.record_id))
        return 0

    if args.command == "export":
        document = admin.export_document(args.business_id, args.invoice_id)
        if args.output is None:
            sys.stdout.buffer.write(document.content)
            return 0
        target = args.output / document.filename if args.output.is_dir() else args.output
        target.write_bytes(document.content)
        print(str(target), file=sys.stderr)
        return 0

    if args.command == "apply-preset":
        presets = runtime.settings.worker.presets
        if args.preset not in presets:
            print(f"unknown preset {args.preset!r}; choose from {sorted(presets)}", file=sys.stderr)
            return 2
        admin.apply_preset(args.business_id, presets[args.preset])
        return 0

    raise ValueError(f"Unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_active_settings(args.config)
    configure_logging(level=settings.log_level)

    gateway = LoopbackGateway() if args.gateway == DEFAULT_GATEWAY else load_gateway(args.gateway)
    runtime = build_runtime(settings, gateway)
    try:
        return _run_command(args, runtime)
    except VerifactuKernelError as exc:
        print(f"{exc.code}: {exc}", file=sys.stderr)
        return 2
    finally:
        runtime.dispose()


if __name__ == "__main__":
    sys.exit(main())
