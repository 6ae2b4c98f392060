"""
Flux node control-plane API client.

Two operations against a node's API: list running workloads and remove a
named workload. Transport and authorization failures are reported as result
values, never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Union

import aiohttp

from fluxwarden.control_plane.registry import Node
from fluxwarden.shared.logging import API_TAG, get_tagged_logger
from fluxwarden.shared.settings import DEFAULT_AUTH_HEADER, DEFAULT_REQUEST_TIMEOUT_SECONDS

LIST_RUNNING_PATH = "/apps/listrunningapps"
REMOVE_PATH = "/apps/appremove"

AUTH_ERROR_STATUSES = frozenset({401, 403})
_UNAUTHORIZED = re.compile(r"unauthori[sz]ed|not authori[sz]ed", re.IGNORECASE)

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)

logger = logging.getLogger("fluxwarden.control_plane.client")


# =============================================================================
# Result types
# =============================================================================
@dataclass(frozen=True)
class ListSuccess:
    """Valid `status == "success"` envelope with an array payload."""

    names: list[str]
    raw: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class ListFailure:
    """Transport error, non-2xx status, or malformed envelope."""

    reason: str
    status: int | None = None


ListResult = Union[ListSuccess, ListFailure]


def workload_names(result: ListResult) -> list[str]:
    """Collapse a list result to names; failures become an empty list."""
    if isinstance(result, ListSuccess):
        return list(result.names)
    return []


@dataclass(frozen=True)
class RemovalResult:
    success: bool
    auth_error: bool = False
    error: str | None = None
    status: int | None = None
    steps: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "auth_error": self.auth_error,
            "error": self.error,
            "status": self.status,
            "steps": self.steps,
        }


# =============================================================================
# Body parsing
# =============================================================================
def decode_json_stream(text: str) -> list[Any]:
    """
    Decode a body made of zero or more concatenated JSON values.

    The removal endpoint streams one JSON object per step (``{...}{...}``).
    Decoding stops at the first undecodable fragment; plain-text bodies
    therefore yield an empty list.
    """
    decoder = json.JSONDecoder()
    values: list[Any] = []
    index = 0
    length = len(text)
    while index < length:
        while index < length and text[index].isspace():
            index += 1
        if index >= length:
            break
        try:
            value, index = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            break
        values.append(value)
    return values


def _envelope_message(envelope: dict[str, Any]) -> str:
    data = envelope.get("data")
    if isinstance(data, dict):
        message = data.get("message") or data.get("name") or ""
    elif isinstance(data, str):
        message = data
    else:
        message = ""
    return str(message or envelope.get("message") or "")


def _envelope_code(envelope: dict[str, Any]) -> int | None:
    data = envelope.get("data")
    code = data.get("code") if isinstance(data, dict) else envelope.get("code")
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def classify_envelope(envelope: Any) -> str | None:
    """
    Classify one decoded response object.

    Returns "auth" for an unauthorized indicator, "error" for any other
    error envelope, and None when the object reports no error.
    """
    if not isinstance(envelope, dict):
        return None
    message = _envelope_message(envelope)
    is_error = str(envelope.get("status", "")).lower() == "error"
    if _UNAUTHORIZED.search(message):
        return "auth"
    if is_error:
        if _envelope_code(envelope) in AUTH_ERROR_STATUSES:
            return "auth"
        return "error"
    return None


def extract_workload_names(data: list[Any]) -> list[str]:
    """First entry of each record's Names list, leading '/' kept."""
    names: list[str] = []
    for record in data:
        if not isinstance(record, dict):
            continue
        record_names = record.get("Names")
        if isinstance(record_names, list) and record_names and isinstance(record_names[0], str):
            names.append(record_names[0])
    return names


# =============================================================================
# Client
# =============================================================================
class NodeApiClient:
    """HTTP client for a Flux node's control-plane API."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        auth_header: str = DEFAULT_AUTH_HEADER,
        debug: bool = False,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.auth_header = auth_header
        self.debug = debug

    @staticmethod
    def _base_url(api_url: str) -> str:
        return api_url.rstrip("/")

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout_seconds)

    async def probe(self, api_url: str) -> bool:
        """
        True if anything answers at the API's list endpoint.

        Any HTTP response, including 401, proves the node exists; only a
        transport failure (refused, DNS, timeout) means absence.
        """
        url = f"{self._base_url(api_url)}{LIST_RUNNING_PATH}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(url) as resp:
                    logger.debug("Probe %s answered HTTP %s", url, resp.status)
                    return True
        except TRANSPORT_ERRORS as exc:
            logger.debug("Probe %s failed: %s", url, exc or type(exc).__name__)
            return False

    async def list_running(self, node: Node) -> ListResult:
        """List running workloads; a public read, no credential attached."""
        log = get_tagged_logger(API_TAG, node.node_id)
        url = f"{self._base_url(node.api_url)}{LIST_RUNNING_PATH}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(url) as resp:
                    status = resp.status
                    text = await resp.text(errors="replace")
        except TRANSPORT_ERRORS as exc:
            log.info("Listing running apps failed: %s", exc or type(exc).__name__)
            return ListFailure(reason=f"transport: {exc or type(exc).__name__}")

        if not 200 <= status < 300:
            log.info("Listing running apps returned HTTP %s", status)
            return ListFailure(reason=f"HTTP {status}", status=status)

        try:
            payload = json.loads(text)
        except ValueError:
            log.info("Listing running apps returned a non-JSON body")
            return ListFailure(reason="malformed body", status=status)

        if self.debug:
            log.debug("Running apps: %s", json.dumps(payload, indent=2))

        if (
            not isinstance(payload, dict)
            or payload.get("status") != "success"
            or not isinstance(payload.get("data"), list)
        ):
            log.info("Listing running apps returned no success envelope")
            return ListFailure(reason="no success envelope", status=status)

        data = payload["data"]
        return ListSuccess(names=extract_workload_names(data), raw=data)

    async def remove_workload(self, node: Node, name: str, token: str | None) -> RemovalResult:
        """Remove a workload by primary name, authenticated with `token`."""
        log = get_tagged_logger(API_TAG, node.node_id)
        if not token:
            log.warning("Not logged in; credential is missing.")
            return RemovalResult(success=False, auth_error=True, error="missing credential")

        url = f"{self._base_url(node.api_url)}{REMOVE_PATH}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(
                    url,
                    params={"appname": name},
                    headers={self.auth_header: token},
                ) as resp:
                    status = resp.status
                    text = await resp.text(errors="replace")
        except TRANSPORT_ERRORS as exc:
            log.error("Error removing app %s: %s", name, exc or type(exc).__name__)
            return RemovalResult(
                success=False,
                error=f"transport: {exc or type(exc).__name__}",
            )

        if status in AUTH_ERROR_STATUSES:
            return RemovalResult(success=False, auth_error=True, error=f"HTTP {status}", status=status)
        if not 200 <= status < 300:
            return RemovalResult(success=False, error=f"HTTP {status}", status=status)

        steps = [step for step in decode_json_stream(text) if isinstance(step, dict)]
        if self.debug:
            log.debug("Raw remove response for %s: %s", name, text)
            for index, step in enumerate(steps, 1):
                log.debug("Parsed step %d for %s: %s", index, name, json.dumps(step))
            if steps:
                log.debug("Final status for %s: %s", name, json.dumps(steps[-1]))

        verdicts = [(classify_envelope(step), step) for step in steps]
        for verdict, step in verdicts:
            if verdict == "auth":
                return RemovalResult(
                    success=False,
                    auth_error=True,
                    error=_envelope_message(step) or "unauthorized",
                    status=status,
                    steps=steps,
                )
        for verdict, step in verdicts:
            if verdict == "error":
                return RemovalResult(
                    success=False,
                    error=_envelope_message(step) or "error envelope",
                    status=status,
                    steps=steps,
                )
        return RemovalResult(success=True, status=status, steps=steps)
