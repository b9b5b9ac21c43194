from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace

from rich.console import Console
from rich.logging import RichHandler

from tsr import db
from tsr.docker_ops import RuntimeUnavailable
from tsr.namespace import ENVIRONMENTS, plan
from tsr.reconciler import Reconciler
from tsr.runtime import FailurePolicy
from tsr.settings import settings
from tsr.stack import PreconditionError


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
    )


def _namespace_args(p: argparse.ArgumentParser, domain: bool = True) -> None:
    p.add_argument("--project", required=True)
    p.add_argument("--environment", required=True, choices=ENVIRONMENTS)
    if domain:
        p.add_argument("--domain-base", default="localhost")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Telehealth Stack Reconciler CLI")
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_plan = sub.add_parser("plan", help="Show the resource plan for a namespace")
    _namespace_args(s_plan)

    s_dep = sub.add_parser("deploy", help="Reconcile a namespace to running state")
    _namespace_args(s_dep)
    s_dep.add_argument("--force", action="store_true", help="Replace existing proxy routes")
    s_dep.add_argument("--reset", action="store_true", help="Tear the namespace down first")
    s_dep.add_argument("--yes", action="store_true", help="Confirm volume removal for --reset")
    s_dep.add_argument("--restart-proxy", action="store_true", help="Restart the proxy after publishing routes")
    s_dep.add_argument("--strict-credentials", action="store_true", help="Fail instead of propagating an unverified token")
    s_dep.add_argument("--shared-db", action="store_true", help="Run one MariaDB for the whole namespace on the shared network")
    s_dep.add_argument("--halt-on-soft-fail", action="store_true")
    s_dep.add_argument("--fail-fast", action="store_true", help="Stop starting services after the first hard failure")

    s_stop = sub.add_parser("stop", help="Stop a namespace's containers")
    _namespace_args(s_stop, domain=False)

    s_reset = sub.add_parser("reset", help="Remove a namespace's containers and networks")
    _namespace_args(s_reset, domain=False)
    s_reset.add_argument("--yes", action="store_true", help="Also remove volumes (irreversible)")
    s_reset.add_argument("--drop-routes", action="store_true", help="Delete the namespace's proxy hosts first")

    s_ev = sub.add_parser("events", help="Show journal events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--namespace")

    return p


def _failure_summary(results) -> list[dict]:
    return [r.as_dict() for r in results if r.failed]


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    db.init_db()

    if args.cmd == "events":
        _print([e.__dict__ for e in db.list_events(limit=args.limit, namespace=args.namespace)])
        return 0

    try:
        rp = plan(args.project, args.environment, getattr(args, "domain_base", "localhost"), projects=settings.projects)
    except ValueError as e:
        _print({"error": str(e)})
        return 2

    if args.cmd == "plan":
        _print(rp.as_dict())
        return 0

    if args.cmd == "deploy":
        cfg = replace(
            settings,
            strict_credentials=settings.strict_credentials or args.strict_credentials,
            shared_db=settings.shared_db or args.shared_db,
        )
        policy = FailurePolicy(halt_on_soft_fail=args.halt_on_soft_fail, continue_independent=not args.fail_fast)
        rec = Reconciler(rp, policy=policy, cfg=cfg)
        try:
            state = rec.deploy(
                force=args.force,
                reset=args.reset,
                confirm_destructive=args.yes,
                restart_proxy=args.restart_proxy,
            )
        except (PreconditionError, RuntimeUnavailable) as e:
            _print({"namespace": rp.namespace, "error": str(e)})
            return 2
        summary = state.summary()
        summary["domains"] = dict(rp.domains)
        _print(summary)
        return 0 if not summary["failures"] else 1

    try:
        if args.cmd == "stop":
            results = Reconciler(rp).stop()
        elif args.cmd == "reset":
            results = Reconciler(rp).reset(confirm_destructive=args.yes, drop_routes=args.drop_routes)
        else:
            return 2
    except RuntimeUnavailable as e:
        _print({"namespace": rp.namespace, "error": str(e)})
        return 2
    failures = _failure_summary(results)
    _print({"namespace": rp.namespace, "steps": [r.as_dict() for r in results], "failures": failures})
    return 0 if not failures else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
