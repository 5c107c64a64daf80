"""
HTTP surface: one route per tool in the catalog plus health and metrics.

Actor identity arrives in headers set by the upstream auth proxy; this layer
only translates requests into envelopes and results into responses.
Run with ``uvicorn --factory dispatchgate.server:create_app``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from dispatchgate import __version__
from dispatchgate.config import DispatchSettings
from dispatchgate.errors import DispatchError, InputError
from dispatchgate.health.drift import detect_drift
from dispatchgate.observability.internal_metrics import snapshot as metrics_snapshot
from dispatchgate.observability.log_format import configure_logging
from dispatchgate.outbox.scheduler import scheduler_status, start_outbox_scheduler, stop_outbox_scheduler
from dispatchgate.pipeline.envelope import RequestEnvelope
from dispatchgate.policy.roles import InvalidRoleError
from dispatchgate.policy.table import TOOL_POLICIES, ToolPolicy
from dispatchgate.runtime import Runtime, create_runtime


logger = logging.getLogger(__name__)


def trace_id_from_traceparent(value: Optional[str]) -> Optional[str]:
    """``00-<trace-id>-<span-id>-<flags>`` -> trace id, or None when malformed."""
    parts = str(value or "").strip().split("-")
    if len(parts) != 4 or len(parts[1]) != 32:
        return None
    trace_id = parts[1].lower()
    if trace_id == "0" * 32 or any(ch not in "0123456789abcdef" for ch in trace_id):
        return None
    return trace_id


def _error_response(exc: DispatchError, correlation_id: Optional[str]) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(correlation_id=correlation_id),
    )


async def _read_payload(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise InputError("Request body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise InputError("Request body must be a JSON object")
    return payload


def _build_envelope(policy: ToolPolicy, request: Request, payload: Dict[str, Any]) -> RequestEnvelope:
    headers = request.headers
    declared_tool = headers.get("x-tool-name")
    if declared_tool and declared_tool.strip() != policy.tool_name:
        raise InputError(
            f"X-Tool-Name {declared_tool} does not match route tool {policy.tool_name}",
            code="TOOL_ROUTE_MISMATCH",
            details={"route_tool": policy.tool_name, "declared_tool": declared_tool},
        )
    trace_id = headers.get("x-trace-id") or trace_id_from_traceparent(headers.get("traceparent"))
    try:
        return RequestEnvelope(
            tool_name=policy.tool_name,
            actor_id=(headers.get("x-actor-id") or "").strip(),
            actor_role=(headers.get("x-actor-role") or "").strip(),
            actor_type=(headers.get("x-actor-type") or "HUMAN").strip().upper(),
            request_key=(headers.get("idempotency-key") or "").strip() or None,
            correlation_id=(headers.get("x-correlation-id") or "").strip() or None,
            trace_id=trace_id,
            ticket_id=request.path_params.get("ticket_id"),
            payload=payload,
        )
    except ValidationError as exc:
        raise InvalidRoleError(
            "Actor headers are missing or malformed",
            details={"fields": sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})},
        ) from exc


def _tool_endpoint(runtime: Runtime, policy: ToolPolicy) -> Callable[..., Any]:
    async def endpoint(request: Request) -> JSONResponse:
        correlation_id = request.headers.get("x-correlation-id")
        try:
            payload = await _read_payload(request) if policy.method != "GET" else {}
            envelope = _build_envelope(policy, request, payload)
        except DispatchError as exc:
            return _error_response(exc, correlation_id)
        result = await run_in_threadpool(runtime.pipeline.execute, envelope)
        return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)

    endpoint.__name__ = "tool_" + policy.tool_name.replace(".", "_")
    return endpoint


def _health_payload(runtime: Runtime) -> tuple:
    payload: Dict[str, Any] = {
        "status": "ok",
        "service": "dispatchgate",
        "version": __version__,
        "storage": "ok",
        "schema_version": runtime.schema_version,
        "outbox_scheduler": scheduler_status(),
    }
    try:
        runtime.storage.fetchone("SELECT 1 AS ok")
        drift = detect_drift(runtime.storage)
    except Exception:
        logger.exception("health probe failed")
        payload["status"] = "error"
        payload["storage"] = "error"
        return payload, 503
    payload["drift"] = drift
    if drift["status"] != "ok":
        payload["status"] = "unhealthy"
        return payload, 503
    return payload, 200


def create_app(settings: Optional[DispatchSettings] = None, *, runtime: Optional[Runtime] = None) -> FastAPI:
    resolved = runtime.settings if runtime is not None else (settings or DispatchSettings.from_env())
    configure_logging(resolved)
    runtime = runtime or create_runtime(resolved)

    app = FastAPI(title="DispatchGate", version=__version__)
    app.state.runtime = runtime

    for policy in TOOL_POLICIES.values():
        app.add_api_route(
            policy.route,
            _tool_endpoint(runtime, policy),
            methods=[policy.method],
            name=policy.tool_name,
        )

    @app.get("/health")
    def health():
        payload, status_code = _health_payload(runtime)
        return JSONResponse(status_code=status_code, content=payload)

    @app.get("/internal/metrics")
    def internal_metrics():
        return {"metrics": metrics_snapshot()}

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics():
        lines = [
            "# HELP dispatchgate_metric_total DispatchGate internal counters",
            "# TYPE dispatchgate_metric_total counter",
        ]
        for name, value in metrics_snapshot().items():
            lines.append(f'dispatchgate_metric_total{{metric="{name}"}} {int(value)}')
        return PlainTextResponse("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4; charset=utf-8")

    @app.on_event("startup")
    def start_worker():
        status = start_outbox_scheduler(
            runtime.worker,
            interval_seconds=resolved.outbox_poll_seconds,
            enabled=resolved.outbox_scheduler_enabled,
        )
        logger.info("outbox scheduler: %s", status["reason"])

    @app.on_event("shutdown")
    def stop_worker():
        stop_outbox_scheduler()

    return app
