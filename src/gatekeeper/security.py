"""Security utilities: suspicion detection, URL checks and admin auth."""

import ipaddress
import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Callable, Iterable
from urllib.parse import urlparse

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from gatekeeper.errors import InvalidIdentity
from gatekeeper.quota.gate import Severity
from gatekeeper.store.base import IdentifierKind

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"

_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


def client_identity(request: Request) -> tuple[str, IdentifierKind]:
    """
    Identity of the caller: the authenticated user id header if present,
    else the client network address.
    """
    user_id = request.headers.get(USER_ID_HEADER)
    if user_id is not None:
        return user_id, IdentifierKind.USER
    host = request.client.host if request.client else "unknown"
    return host, IdentifierKind.IP


# --- Destination URLs ---


class UrlValidationError(Exception):
    """Raised when a destination URL is not allowed."""

    pass


class UrlValidator:
    """
    Rejects destination URLs that point at internal infrastructure.

    Loopback, private, link-local, multicast and reserved addresses are
    refused, as are localhost names and non-HTTP schemes. An optional
    domain allowlist restricts external hosts further.
    """

    ALLOWED_SCHEMES = {"http", "https"}
    BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}

    def __init__(self, allowed_domains: Iterable[str] | None = None) -> None:
        self._allowed_domains = {d.lower().lstrip(".") for d in allowed_domains or []}

    @staticmethod
    def _is_internal_address(host: str) -> bool:
        try:
            ip = ipaddress.ip_address(host.strip("[]"))
        except ValueError:
            return False
        return (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_multicast
            or ip.is_reserved
            or ip.is_unspecified
        )

    def _host_allowed(self, host: str) -> bool:
        if not self._allowed_domains:
            return True
        return any(host == d or host.endswith(f".{d}") for d in self._allowed_domains)

    def validate(self, url: str) -> str:
        """
        Validate a destination URL.

        Returns:
            The URL unchanged

        Raises:
            UrlValidationError: If the URL is malformed or not allowed
        """
        if not url:
            raise UrlValidationError("Empty URL")

        try:
            parsed = urlparse(url)
        except ValueError as e:
            raise UrlValidationError(f"Invalid URL format: {e}") from e

        if parsed.scheme.lower() not in self.ALLOWED_SCHEMES:
            raise UrlValidationError(f"Scheme not allowed: '{parsed.scheme}'")

        host = (parsed.hostname or "").lower()
        if not host:
            raise UrlValidationError("URL missing hostname")
        if host in self.BLOCKED_HOSTNAMES or host.endswith(".local") or host.startswith("localhost"):
            raise UrlValidationError(f"Blocked hostname: {host}")
        if self._is_internal_address(host):
            raise UrlValidationError(f"Internal address blocked: {host}")
        if not self._host_allowed(host):
            raise UrlValidationError(f"Domain not in allowlist: {host}")

        return url

    def is_valid(self, url: str) -> bool:
        try:
            self.validate(url)
            return True
        except UrlValidationError:
            return False


# --- Request inspection ---


@dataclass
class Inspection:
    """Findings of a request inspection."""

    severity: Severity | None = None
    reasons: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    """Observations that are logged but never reported as violations."""

    @property
    def suspicious(self) -> bool:
        return self.severity is not None

    def add(self, severity: Severity, reason: str) -> None:
        self.reasons.append(reason)
        if self.severity is None or _SEVERITY_RANK[severity] > _SEVERITY_RANK[self.severity]:
            self.severity = severity


class RequestInspector:
    """
    Scores a request for signs of abuse.

    Severity of the strongest finding wins:
    - HIGH: injection payloads (script tags, path traversal, SQL union,
      XML entities, eval/exec calls)
    - MEDIUM: oversized payload, or a target URL pointing at internal hosts

    A missing or automated-client user agent is only noted, never scored.
    """

    INJECTION_PATTERNS = [
        re.compile(r"<script|javascript:", re.IGNORECASE),
        re.compile(r"\.\./|\.\.\\|\.\.%2f", re.IGNORECASE),
        re.compile(r"\bunion\b\s+(all\s+)?\bselect\b", re.IGNORECASE),
        re.compile(r"<!ENTITY|<!DOCTYPE[^>]*ENTITY", re.IGNORECASE),
        re.compile(r"\b(eval|exec)\s*\(", re.IGNORECASE),
    ]
    AUTOMATED_AGENT = re.compile(r"bot|crawler|spider|scraper|curl|wget", re.IGNORECASE)
    URL_PATTERN = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)

    def __init__(
        self,
        max_payload_bytes: int = 50_000,
        url_validator: UrlValidator | None = None,
    ) -> None:
        """
        Initialize the inspector.

        Args:
            max_payload_bytes: Payload size above which a request is anomalous
            url_validator: Validator for URLs found in the payload
        """
        self._max_payload_bytes = max_payload_bytes
        self._url_validator = url_validator or UrlValidator()

    def inspect(
        self,
        payload: str = "",
        user_agent: str | None = None,
        urls: Iterable[str] | None = None,
    ) -> Inspection:
        """
        Inspect request content.

        Args:
            payload: Request body and query string as text
            user_agent: User-Agent header value
            urls: Destination URLs; extracted from the payload when omitted

        Returns:
            Inspection with the strongest severity found
        """
        result = Inspection()

        for pattern in self.INJECTION_PATTERNS:
            if pattern.search(payload):
                result.add(Severity.HIGH, f"Injection pattern {pattern.pattern!r}")
                break

        size = len(payload.encode("utf-8"))
        if size > self._max_payload_bytes:
            result.add(Severity.MEDIUM, f"Payload of {size} bytes exceeds {self._max_payload_bytes}")

        targets = list(urls) if urls is not None else self.URL_PATTERN.findall(payload)
        for url in targets:
            try:
                self._url_validator.validate(url)
            except UrlValidationError as e:
                result.add(Severity.MEDIUM, f"Disallowed URL: {e}")
                break

        if not user_agent:
            result.notes.append("Missing user agent")
        elif self.AUTOMATED_AGENT.search(user_agent):
            result.notes.append(f"Automated client: {user_agent[:64]}")

        return result


class SuspicionMiddleware(BaseHTTPMiddleware):
    """
    Inspects inbound requests and reports anomalies to the admission gate.

    Requests with injection payloads are rejected outright; weaker
    findings are only reported.
    """

    BYPASS_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    def __init__(
        self,
        app,
        inspector: RequestInspector,
        bypass_paths: set[str] | None = None,
    ) -> None:
        super().__init__(app)
        self._inspector = inspector
        self._bypass_paths = bypass_paths or self.BYPASS_PATHS

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self._bypass_paths or request.url.path.startswith("/v1/admin"):
            return await call_next(request)

        body = await request.body()
        payload = body.decode("utf-8", errors="replace")
        if request.url.query:
            payload = f"{request.url.query}\n{payload}"

        inspection = self._inspector.inspect(payload, request.headers.get("User-Agent"))
        identifier, _ = client_identity(request)
        if inspection.notes:
            logger.debug(f"Request from {identifier}: {'; '.join(inspection.notes)}")
        if not inspection.suspicious:
            return await call_next(request)

        logger.warning(
            f"Suspicious request from {identifier} to {request.url.path}: "
            f"{'; '.join(inspection.reasons)}"
        )

        controller = getattr(request.app.state, "controller", None)
        if controller is not None:
            try:
                await controller.report_suspicious_signal(identifier, inspection.severity)
            except InvalidIdentity as e:
                logger.warning(f"Suspicion signal not recorded: {e}")

        if inspection.severity == Severity.HIGH:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Invalid request format", "code": "INVALID_INPUT"},
            )

        return await call_next(request)


# --- Admin authentication ---


def verify_admin_key(request: Request, api_key: str | None) -> str:
    """
    Validate the Bearer token of an admin request.

    Raises:
        HTTPException: 503 when no admin key is configured, 401 when the
            token is missing or wrong
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API disabled: ADMIN_API_KEY not configured",
        )

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header[7:]
    if not secrets.compare_digest(token, api_key):
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Invalid admin key attempt from {client_host}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token
