"""
Tests for hosts pattern classification and matching
"""
import pytest

from core.patterns import (
    PatternKind,
    classify_pattern,
    compile_pattern,
    is_ipv6,
    match_exact,
    match_regex,
    match_wildcard,
    query_forms,
)


class TestClassifyPattern:

    @pytest.mark.parametrize("pattern", [
        "*.example.com",
        "*.ex(ample).com",
        "^*.example.com$",
        "api.*.internal",
        "*",
    ])
    def test_star_is_always_wildcard(self, pattern):
        assert classify_pattern(pattern) is PatternKind.WILDCARD

    @pytest.mark.parametrize("pattern", [
        "example.com",
        "dns.example.com",
        "my-host-01.lan",
        "localhost",
    ])
    def test_plain_domains_are_exact(self, pattern):
        assert classify_pattern(pattern) is PatternKind.EXACT

    @pytest.mark.parametrize("pattern", [
        r"^api\d+\.example\.com$",
        r"(foo|bar)\.test",
        r"host[0-9]+\.lan",
        r"a{2}\.example\.com",
        r"svc\.example\.com$",
    ])
    def test_regex_metachars_make_regex(self, pattern):
        assert classify_pattern(pattern) is PatternKind.REGEX

    def test_invalid_regex_falls_back_to_exact(self):
        assert classify_pattern("bad(pattern") is PatternKind.EXACT
        assert classify_pattern("[unclosed.example.com") is PatternKind.EXACT

    def test_classification_is_stable(self):
        results = {classify_pattern("dns.example.com") for _ in range(5)}
        assert results == {PatternKind.EXACT}


class TestMatching:

    def test_query_forms_strip_trailing_dot(self):
        assert query_forms("API.Example.com.") == ("api.example.com.", "api.example.com")
        assert query_forms("api.example.com") == ("api.example.com", "api.example.com")

    def test_match_exact(self):
        assert match_exact("dns.example.com", "dns.example.com")
        assert match_exact("DNS.Example.COM.", "dns.example.com")
        assert not match_exact("www.dns.example.com", "dns.example.com")

    def test_match_exact_repeated_calls(self):
        assert all(match_exact("dns.example.com", "dns.example.com") for _ in range(3))

    def test_wildcard_requires_a_label(self):
        assert match_wildcard("a.example.com", "*.example.com")
        assert match_wildcard("a.b.example.com", "*.example.com")
        assert match_wildcard("a.example.com.", "*.example.com")
        assert not match_wildcard("example.com", "*.example.com")
        assert not match_wildcard("example.com.", "*.example.com")

    def test_wildcard_is_anchored(self):
        assert not match_wildcard("a.example.com.evil.net", "*.example.com")
        assert not match_wildcard("aexample.com", "*.example.com")

    def test_wildcard_escapes_other_metachars(self):
        assert match_wildcard("x.ex(ample).com", "*.ex(ample).com")
        assert not match_wildcard("x.example.com", "*.ex(ample).com")

    def test_wildcard_in_the_middle(self):
        assert match_wildcard("api.eu.internal", "api.*.internal")
        assert not match_wildcard("web.eu.internal", "api.*.internal")

    def test_match_regex_is_not_anchored(self):
        compiled = compile_pattern(r"api\d+\.example")
        assert match_regex("api1.example.com", compiled)
        assert match_regex("x.api22.example.com.", compiled)
        assert not match_regex("api.example.com", compiled)

    def test_match_regex_is_case_insensitive(self):
        compiled = compile_pattern(r"^API\.test\.com$")
        assert match_regex("api.test.com.", compiled)

    def test_match_regex_without_compiled_pattern(self):
        assert not match_regex("api.example.com", None)

    def test_is_ipv6(self):
        assert is_ipv6("2001:db8::1")
        assert is_ipv6("fe80::1")
        assert not is_ipv6("10.0.0.1")
