"""
Security Manager
----------------
Allow/deny verdicts for dynamic tool definitions and for every tool
invocation.

Definition time (static):
- Reserved and blocked names
- Capability tags against the allowed set
- Code size and AST scan (see code_scanner)
- URL literals against the domain allowlist

Invocation time (cheap, every call):
- Blocked tools
- Argument payload size
- Schema revalidation (field presence, types, enums, unknown fields)
- Per-tool rate limit

Exit Criterion: A denied definition is never stored and a denied
invocation never starts.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence, Set
from urllib.parse import urlsplit
import json
import logging
import time

from .code_scanner import CodeScanner
from .rate_limiter import KeyedRateLimiter, RateLimitConfig
from .registry import ToolDefinition, ToolSchema


@dataclass(frozen=True)
class SecurityVerdict:
    """Allow, or Deny with a reason."""
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "SecurityVerdict":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "SecurityVerdict":
        return cls(False, reason)

    def __bool__(self) -> bool:
        return self.allowed

    def __repr__(self) -> str:
        return "Allow" if self.allowed else f"Deny({self.reason})"


@dataclass
class SecurityPolicy:
    """Policy knobs; built from SecuritySettings by the CLI."""
    allowed_domains: Set[str] = field(default_factory=lambda: {
        "wikipedia.org", "github.com", "stackoverflow.com", "docs.rs",
    })
    allowed_capabilities: Set[str] = field(default_factory=lambda: {
        "math", "json", "re", "datetime", "statistics", "random", "network",
    })
    blocked_tools: Set[str] = field(default_factory=set)
    reserved_names: Set[str] = field(default_factory=set)
    max_code_bytes: int = 20_000
    max_argument_bytes: int = 16_384
    invocations_per_minute: int = 60
    invocation_burst: int = 10


def extract_domain(url: str) -> str:
    """Host part of a URL: protocol, credentials, port and path stripped."""
    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"http://{candidate}"
    try:
        host = urlsplit(candidate).hostname or ""
    except ValueError:
        return ""
    return host.lower().rstrip(".")


class SecurityManager:
    """
    Evaluates tool definitions and invocations against a SecurityPolicy.

    Rules:
    - Every deny is logged with the tool name and reason
    - Checks are pure apart from the rate limiter's token buckets
    """

    def __init__(
        self,
        policy: Optional[SecurityPolicy] = None,
        scanner: Optional[CodeScanner] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or SecurityPolicy()
        self.scanner = scanner or CodeScanner()
        self._limiter = KeyedRateLimiter(
            RateLimitConfig(
                requests_per_minute=self.policy.invocations_per_minute,
                burst_size=self.policy.invocation_burst,
            ),
            clock=clock,
        )
        self._logger = logging.getLogger("toolsmith.tools.security")

    # ----- policy mutators -----

    def reserve_names(self, names: Iterable[str]) -> None:
        self.policy.reserved_names.update(names)

    def allow_domain(self, domain: str) -> None:
        self.policy.allowed_domains.add(domain.lower())
        self._logger.info(f"Domain allowed: {domain}")

    def block_domain(self, domain: str) -> None:
        self.policy.allowed_domains.discard(domain.lower())
        self._logger.info(f"Domain removed from allowlist: {domain}")

    def block_tool(self, name: str) -> None:
        self.policy.blocked_tools.add(name)
        self._logger.info(f"Tool blocked: {name}")

    def unblock_tool(self, name: str) -> None:
        self.policy.blocked_tools.discard(name)
        self._logger.info(f"Tool unblocked: {name}")

    def forget_tool(self, name: str) -> None:
        """Drop per-tool state once a dynamic tool is deleted."""
        self._limiter.forget(name)

    # ----- checks -----

    def is_url_allowed(self, url: str) -> SecurityVerdict:
        """Only http(s) URLs whose host is an allowed domain or a subdomain of one."""
        scheme = url.split("://", 1)[0].lower() if "://" in url else "http"
        if scheme not in ("http", "https"):
            return SecurityVerdict.deny(f"URL scheme '{scheme}' is not allowed")

        domain = extract_domain(url)
        if not domain:
            return SecurityVerdict.deny(f"Could not determine host of '{url}'")

        for allowed in self.policy.allowed_domains:
            if domain == allowed or domain.endswith(f".{allowed}"):
                return SecurityVerdict.allow()
        return SecurityVerdict.deny(f"Domain '{domain}' is not in allowlist")

    def vet_definition(
        self,
        schema: ToolSchema,
        code: str,
        capabilities: Sequence[str] = (),
    ) -> SecurityVerdict:
        """Static checks on a proposed dynamic tool."""
        verdict = self._vet_definition(schema, code, capabilities)
        if not verdict.allowed:
            self._logger.warning(
                f"Definition of '{schema.name}' denied: {verdict.reason}",
                extra={"tool_name": schema.name, "reason": verdict.reason},
            )
        return verdict

    def _vet_definition(
        self,
        schema: ToolSchema,
        code: str,
        capabilities: Sequence[str],
    ) -> SecurityVerdict:
        if schema.name in self.policy.reserved_names:
            return SecurityVerdict.deny(f"Tool name '{schema.name}' is reserved")

        if schema.name in self.policy.blocked_tools:
            return SecurityVerdict.deny(f"Tool '{schema.name}' is blocked")

        unknown = [c for c in capabilities if c not in self.policy.allowed_capabilities]
        if unknown:
            allowed = ", ".join(sorted(self.policy.allowed_capabilities))
            return SecurityVerdict.deny(
                f"Capability not permitted: {', '.join(unknown)} (allowed: {allowed})"
            )

        if len(code.encode("utf-8")) > self.policy.max_code_bytes:
            return SecurityVerdict.deny(
                f"Code exceeds {self.policy.max_code_bytes} bytes"
            )

        scan = self.scanner.scan(code)
        if scan.blocked:
            return SecurityVerdict.deny(f"Code rejected: {scan.block_reason}")

        if scan.urls and "network" not in capabilities:
            return SecurityVerdict.deny(
                "Code references URLs but does not declare the 'network' capability"
            )

        for url in scan.urls:
            url_verdict = self.is_url_allowed(url)
            if not url_verdict.allowed:
                return url_verdict

        return SecurityVerdict.allow()

    def vet_invocation(
        self,
        name: str,
        args: Any,
        definition: ToolDefinition,
    ) -> SecurityVerdict:
        """Per-call checks, run before anything executes."""
        verdict = self._vet_invocation(name, args, definition)
        if not verdict.allowed:
            self._logger.warning(
                f"Invocation of '{name}' denied: {verdict.reason}",
                extra={"tool_name": name, "reason": verdict.reason},
            )
        return verdict

    def _vet_invocation(self, name: str, args: Any, definition: ToolDefinition) -> SecurityVerdict:
        if name in self.policy.blocked_tools:
            return SecurityVerdict.deny(f"Tool '{name}' is blocked")

        if not isinstance(args, dict):
            return SecurityVerdict.deny(
                f"Arguments must be an object, got {type(args).__name__}"
            )

        try:
            payload_size = len(json.dumps(args, default=str).encode("utf-8"))
        except (TypeError, ValueError) as e:
            return SecurityVerdict.deny(f"Arguments are not serializable: {e}")
        if payload_size > self.policy.max_argument_bytes:
            return SecurityVerdict.deny(
                f"Argument payload of {payload_size} bytes exceeds limit of "
                f"{self.policy.max_argument_bytes}"
            )

        valid, error = definition.schema.validate_args(args)
        if not valid:
            return SecurityVerdict.deny(error)

        if not self._limiter.try_acquire(name):
            return SecurityVerdict.deny(f"Rate limit exceeded for tool '{name}'")

        return SecurityVerdict.allow()

    def status(self) -> dict:
        """Snapshot of the active policy for display."""
        return {
            "allowed_domains": sorted(self.policy.allowed_domains),
            "allowed_capabilities": sorted(self.policy.allowed_capabilities),
            "blocked_tools": sorted(self.policy.blocked_tools),
            "max_code_bytes": self.policy.max_code_bytes,
            "max_argument_bytes": self.policy.max_argument_bytes,
        }


def policy_from_settings(settings: Any, reserved_names: Iterable[str] = ()) -> SecurityPolicy:
    """Build a SecurityPolicy from infra.config.SecuritySettings."""
    return SecurityPolicy(
        allowed_domains={d.lower() for d in settings.allowed_domains},
        allowed_capabilities=set(settings.allowed_capabilities),
        blocked_tools=set(settings.blocked_tools),
        reserved_names=set(reserved_names),
        max_code_bytes=settings.max_code_bytes,
        max_argument_bytes=settings.max_argument_bytes,
        invocations_per_minute=settings.invocations_per_minute,
        invocation_burst=settings.invocation_burst,
    )
