"""Forwarding proxy for apps that run on the maker's own server.

The app declares ``run.url``; we send ``{inputs, tokens}`` where each token is
a signed bearer form of a capability token, and expect ``{outputs, trace?}``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import httpx

from .errors import ProviderError, ToolTimeoutError
from .handler_api import status_error
from .trace import STATUS_ERROR, STATUS_OK

if TYPE_CHECKING:  # pragma: no cover
    from .executor import RunSession
    from .manifest import Manifest, RemoteTarget
    from .result import RunBuilder

REMOTE_TOOL = "remote.run"


def forward(manifest: "Manifest", builder: "RunBuilder", session: "RunSession") -> Optional[BaseException]:
    runtime = session.runtime
    remote = manifest.remote
    if remote is None:
        raise ValueError(f"Manifest {manifest.id} has no run.url")
    recorder = builder.recorder
    started = recorder.begin()
    try:
        tokens = _bearer_tokens(manifest, session)
        runtime.governor.check_budget(session.budget)
        runtime.governor.check_url(session.budget, remote.url)
        body = _send(remote, session, {"inputs": dict(builder.inputs), "tokens": tokens})
        outputs = body.get("outputs")
        if not isinstance(outputs, dict):
            raise ProviderError("Remote adapter response is missing an outputs object")
    except Exception as exc:
        recorder.error(0, REMOTE_TOOL, started, exc)
        runtime.logger.info("Remote run %s failed: %s", builder.id, type(exc).__name__)
        return exc

    remote_trace = body.get("trace") or []
    if isinstance(remote_trace, list) and remote_trace:
        for index, item in enumerate(remote_trace):
            _record_remote_entry(builder, index, item)
            if isinstance(item, Mapping):
                runtime.governor.charge(session.budget, _int_or_none(item.get("tokens")))
    else:
        recorder.ok(0, REMOTE_TOOL, started)
    builder.merge(outputs)
    return None


def _bearer_tokens(manifest: "Manifest", session: "RunSession") -> Dict[str, str]:
    tokens: Dict[str, str] = {}
    for permission in sorted(manifest.permissions):
        token = session.acquire(permission)
        key = token.credential.provider or permission
        tokens[key] = session.runtime.minter.to_bearer(token)
    return tokens


def _send(remote: "RemoteTarget", session: "RunSession", payload: Dict[str, Any]) -> Dict[str, Any]:
    runtime = session.runtime
    timeout = max(runtime.governor.remaining_s(session.budget), 0.001)
    method = remote.method
    try:
        if runtime.http is not None:
            response = runtime.http.request(method, remote.url, json=payload, timeout=timeout)
        else:
            with httpx.Client(timeout=timeout) as client:
                response = client.request(method, remote.url, json=payload)
    except httpx.TimeoutException as exc:
        raise ToolTimeoutError("Remote adapter timed out") from exc
    except httpx.HTTPError as exc:
        raise ProviderError(f"Remote adapter transport failure: {type(exc).__name__}") from exc
    if response.status_code >= 400:
        raise status_error(REMOTE_TOOL, response.status_code)
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderError("Remote adapter returned a non-JSON body") from exc
    if not isinstance(body, dict):
        raise ProviderError("Remote adapter returned an unexpected payload")
    return body


def _record_remote_entry(builder: "RunBuilder", index: int, item: Any) -> None:
    if not isinstance(item, Mapping):
        return
    status = item.get("status") or STATUS_OK
    builder.recorder.external(
        index,
        str(item.get("tool") or REMOTE_TOOL),
        status=STATUS_OK if status == STATUS_OK else STATUS_ERROR,
        latency_ms=_int_or_none(item.get("latencyMs")) or 0,
        tokens_used=_int_or_none(item.get("tokens")),
    )


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None
