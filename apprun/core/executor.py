from __future__ import annotations

import concurrent.futures
from typing import Any, Dict, Mapping, Optional

from .errors import HandlerContractError, ProviderError, TokenError, ToolTimeoutError
from .governor import RunBudget
from .handler_api import HandlerContext, HandlerMeta, ToolHandler, ToolOutput
from .manifest import Manifest, Step
from .remote import forward
from .result import Run, RunBuilder, assemble_outputs, decide_status
from .runtime import Runtime
from .template import interpolate
from .tokens import CapabilityToken


class RunSession:
    """Per-run credential/token cache. Never shared between runs."""

    def __init__(
        self,
        run_id: str,
        runtime: Runtime,
        budget: RunBudget,
        *,
        mode: str,
        user_id: Optional[str],
        fallback_allowed: bool,
    ) -> None:
        self.run_id = run_id
        self.runtime = runtime
        self.budget = budget
        self.mode = mode
        self.user_id = user_id
        self.fallback_allowed = fallback_allowed
        self._tokens: Dict[str, CapabilityToken] = {}

    def acquire(self, permission: str) -> CapabilityToken:
        token = self._tokens.get(permission)
        # Reuse a live token; one that outlived its TTL mid-run is replaced.
        if token is not None and token.expires_at > self.runtime.clock():
            return token
        credential = self.runtime.resolver.resolve(
            self.user_id, permission, self.mode, self.fallback_allowed
        )
        token = self.runtime.minter.mint(self.run_id, permission, credential, deadline=self.budget.deadline)
        self._tokens[permission] = token
        return token

    def close(self) -> None:
        self._tokens.clear()

    def context(self, tool: str) -> HandlerContext:
        return HandlerContext(
            run_id=self.run_id,
            mode=self.mode,
            user_id=self.user_id,
            budget=self.budget,
            governor=self.runtime.governor,
            clock=self.runtime.clock,
            logger=self.runtime.logger,
            settings=self.runtime.settings.handler(tool),
            http=self.runtime.http,
            minter=self.runtime.minter,
        )


def execute(
    manifest: Manifest,
    inputs: Mapping[str, Any],
    *,
    mode: str,
    runtime: Runtime,
    user_id: Optional[str] = None,
    fallback_allowed: bool = True,
) -> Run:
    """Run a validated manifest against validated inputs. Never raises for step failures."""
    builder = RunBuilder(manifest.id, mode=mode, user_id=user_id, inputs=inputs, clock=runtime.clock)
    budget = runtime.governor.open_budget(manifest.limits, mode)
    session = RunSession(
        builder.id, runtime, budget, mode=mode, user_id=user_id, fallback_allowed=fallback_allowed
    )
    logger = runtime.logger

    builder.start()
    logger.info("Run %s started for app %s (mode=%s)", builder.id, manifest.id, mode)
    _log_event(
        runtime.events,
        "run.start",
        run_id=builder.id,
        app_id=manifest.id,
        mode=mode,
        manifest_digest=manifest.digest,
        budget=budget.to_dict(),
    )
    _audit_event(
        runtime.audit,
        "run.start",
        run_id=builder.id,
        app_id=manifest.id,
        mode=mode,
        manifest_digest=manifest.digest,
    )

    error: Optional[BaseException] = None
    try:
        if manifest.is_remote:
            error = forward(manifest, builder, session)
        else:
            error = _run_steps(manifest, builder, session)
    finally:
        runtime.minter.close_run(builder.id)
        session.close()

    status = decide_status(error, bool(builder.outputs))
    outputs = assemble_outputs(builder.outputs, manifest.outputs_schema, status, logger)
    run = builder.finish(status, outputs)

    logger.info("Run %s finished: %s in %sms", run.id, run.status, run.duration_ms)
    _log_event(
        runtime.events,
        "run.end",
        run_id=run.id,
        status=run.status,
        duration_ms=run.duration_ms,
        tokens_used=budget.tokens_used,
    )
    _audit_event(runtime.audit, "run.end", run_id=run.id, status=run.status)
    return run


def _run_steps(manifest: Manifest, builder: RunBuilder, session: RunSession) -> Optional[BaseException]:
    runtime = session.runtime
    recorder = builder.recorder
    error: Optional[BaseException] = None
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"apprun-{builder.id}")
    try:
        for index, step in enumerate(manifest.steps):
            if error is not None:
                recorder.skipped(index, step.tool)
                _log_event(runtime.events, "step.skipped", run_id=builder.id, index=index, tool=step.tool)
                continue
            started = recorder.begin()
            _log_event(runtime.events, "step.start", run_id=builder.id, index=index, tool=step.tool)
            try:
                output = _run_step(step, builder, session, pool)
            except Exception as exc:
                error = exc
                entry = recorder.error(index, step.tool, started, exc)
                _report_step_error(runtime, builder.id, index, step.tool, exc)
                _log_event(
                    runtime.events,
                    "step.error",
                    run_id=builder.id,
                    index=index,
                    tool=step.tool,
                    error_kind=entry.error_kind,
                    duration_ms=entry.duration_ms,
                )
                continue
            entry = recorder.ok(index, step.tool, started, output.tokens_used)
            _log_event(
                runtime.events,
                "step.end",
                run_id=builder.id,
                index=index,
                tool=step.tool,
                duration_ms=entry.duration_ms,
                tokens_used=output.tokens_used,
            )
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
    return error


def _run_step(
    step: Step,
    builder: RunBuilder,
    session: RunSession,
    pool: concurrent.futures.ThreadPoolExecutor,
) -> ToolOutput:
    runtime = session.runtime
    handler = runtime.registry.get(step.tool)
    meta = handler.meta()

    runtime.governor.check_budget(session.budget)
    args = interpolate(dict(step.args), builder.namespace())
    token = session.acquire(meta.capability)

    output = _invoke(handler, token, args, session.context(step.tool), pool, session)
    runtime.governor.charge(session.budget, output.tokens_used)
    builder.merge(_extract(step, meta, output))
    return output


def _invoke(
    handler: ToolHandler,
    token: CapabilityToken,
    args: Dict[str, Any],
    ctx: HandlerContext,
    pool: concurrent.futures.ThreadPoolExecutor,
    session: RunSession,
) -> ToolOutput:
    timeout = session.runtime.governor.remaining_s(session.budget)
    future = pool.submit(handler.invoke, token, args, ctx)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        future.cancel()
        raise ToolTimeoutError(f"{handler.meta().name} exceeded the remaining run budget") from exc


def _extract(step: Step, meta: HandlerMeta, output: ToolOutput) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, source in step.output_fields(meta).items():
        if source not in output.fields:
            if step.output is None:
                continue
            raise HandlerContractError(f"{meta.name} did not return output field {source}")
        values[key] = output.fields[source]
    return values


def _report_step_error(runtime: Runtime, run_id: str, index: int, tool: str, exc: BaseException) -> None:
    if isinstance(exc, TokenError):
        # Token violations mean the executor itself misbehaved.
        runtime.logger.error("Run %s step %s (%s): %s", run_id, index, tool, exc)
        _audit_event(runtime.audit, "token.rejected", run_id=run_id, index=index, tool=tool, error=str(exc))
    elif isinstance(exc, ProviderError) or not hasattr(exc, "error_kind"):
        runtime.logger.warning("Run %s step %s (%s) failed: %s", run_id, index, tool, type(exc).__name__)
    else:
        runtime.logger.info("Run %s step %s (%s) failed: %s", run_id, index, tool, exc)


def _log_event(event_logger, event: str, **data: Any) -> None:
    if event_logger is None:
        return
    payload = {"event": event}
    payload.update(data)
    try:
        event_logger.record(payload)
    except Exception:
        return


def _audit_event(audit_logger, event: str, **data: Any) -> None:
    if audit_logger is None:
        return
    payload = {"event": event}
    payload.update(data)
    try:
        audit_logger.record(payload)
    except Exception:
        return
