import argparse
import json
import sys
import time
import uuid
from typing import List, Optional

from dispatchgate import __version__


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dispatchgate")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("migrate", help="Apply pending schema migrations.")

    worker_p = sub.add_parser("outbox-worker", help="Drain due outbox events.")
    worker_p.add_argument("--iterations", type=int, default=1, help="Iterations to run (ignored with --loop)")
    worker_p.add_argument("--loop", action="store_true", help="Run until interrupted, sleeping the poll interval")

    replay_p = sub.add_parser("outbox-replay", help="Reset a DEAD_LETTER outbox event to PENDING.")
    replay_p.add_argument("--outbox-id", required=True)
    replay_p.add_argument("--actor-id", default="cli-operator")
    replay_p.add_argument("--idempotency-key", help="Defaults to a fresh key per invocation")

    sub.add_parser("drift-check", help="Compare the tool catalog with the stored transition rules.")
    sub.add_parser("export-policy", help="Print the tool catalog as JSON.")
    sub.add_parser("version", help="Print version.")
    return p


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "version":
        print(f"dispatchgate {__version__}")
        return 0

    if args.cmd == "export-policy":
        from dispatchgate.policy.table import export_policy_table

        _emit(export_policy_table())
        return 0

    from dispatchgate.config import DispatchSettings
    from dispatchgate.observability.log_format import configure_logging
    from dispatchgate.runtime import create_runtime

    settings = DispatchSettings.from_env()
    configure_logging(settings)
    runtime = create_runtime(settings)

    if args.cmd == "migrate":
        _emit({"ok": True, "backend": runtime.storage.name, "schema_version": runtime.schema_version})
        return 0

    if args.cmd == "outbox-worker":
        summaries = []
        try:
            while True:
                summaries.append(runtime.worker.run_iteration())
                if not args.loop and len(summaries) >= max(1, args.iterations):
                    break
                time.sleep(settings.outbox_poll_seconds)
        except KeyboardInterrupt:
            pass
        _emit(summaries[-1] if args.loop and summaries else summaries)
        return 0

    if args.cmd == "outbox-replay":
        from dispatchgate.pipeline.envelope import RequestEnvelope

        result = runtime.pipeline.execute(
            RequestEnvelope(
                tool_name="outbox.replay",
                actor_id=args.actor_id,
                actor_role="admin",
                request_key=args.idempotency_key or f"cli-replay-{uuid.uuid4().hex}",
                payload={"outbox_id": args.outbox_id},
            )
        )
        _emit(result.body)
        return 0 if result.ok else 1

    if args.cmd == "drift-check":
        from dispatchgate.health.drift import detect_drift

        report = detect_drift(runtime.storage)
        _emit(report)
        return 0 if report["status"] == "ok" else 2

    return 1


if __name__ == "__main__":
    sys.exit(main())
