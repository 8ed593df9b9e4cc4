"""Unit tests for client IP extraction and normalization."""

import pytest

from app.utils.ip_utils import (
    IPAddressType,
    IPExtractionOptions,
    extract_region_info,
    format_ip_for_log,
    hash_ip_address,
    header_extractor_names,
    normalize_ip_address,
    resolve_client_ip,
)


class TestNormalizeIPAddress:
    """Canonical forms and classification."""

    def test_public_ipv4(self) -> None:
        info = normalize_ip_address("203.0.113.5")
        assert info.normalized == "203.0.113.5"
        assert info.family is IPAddressType.IPV4
        assert info.is_valid is True

    def test_ipv4_mapped_ipv6_collapses_to_ipv4(self) -> None:
        info = normalize_ip_address("::ffff:203.0.113.5")
        assert info.normalized == "203.0.113.5"
        assert info.family is IPAddressType.IPV4

    def test_ipv4_compatible_ipv6_collapses_to_ipv4(self) -> None:
        info = normalize_ip_address("::203.0.113.5")
        assert info.normalized == "203.0.113.5"

    def test_mapping_can_be_disabled(self) -> None:
        info = normalize_ip_address("::ffff:203.0.113.5", map_ipv6_to_ipv4=False)
        assert info.family is IPAddressType.IPV6
        assert info.normalized == "0000:0000:0000:0000:0000:ffff:cb00:7105"

    def test_ipv6_is_fully_expanded_and_lowercase(self) -> None:
        info = normalize_ip_address("2001:DB8::1")
        assert info.normalized == "2001:0db8:0000:0000:0000:0000:0000:0001"
        assert info.family is IPAddressType.IPV6
        assert info.is_valid is True

    @pytest.mark.parametrize(
        "value",
        ["127.0.0.1", "10.1.2.3", "172.16.0.9", "192.168.1.1", "0.0.0.0", "::1", "fe80::1", "fd00::1"],
    )
    def test_local_ranges_are_localhost(self, value: str) -> None:
        info = normalize_ip_address(value)
        assert info.family is IPAddressType.LOCALHOST
        assert info.is_valid is True

    def test_localhost_rejected_when_not_allowed(self) -> None:
        info = normalize_ip_address("127.0.0.1", allow_localhost=False)
        assert info.family is IPAddressType.LOCALHOST
        assert info.is_valid is False
        assert info.limit_key == "0.0.0.0"

    def test_literal_localhost(self) -> None:
        info = normalize_ip_address("localhost")
        assert info.normalized == "127.0.0.1"
        assert info.family is IPAddressType.LOCALHOST

    @pytest.mark.parametrize("value", ["not-an-ip", "", "   ", None, "999.1.1.1", "1.2.3"])
    def test_unparseable_values_use_sentinel(self, value) -> None:
        info = normalize_ip_address(value)
        assert info.is_valid is False
        assert info.family is IPAddressType.UNKNOWN
        assert info.normalized == "0.0.0.0"

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("203.0.113.5:8080", "203.0.113.5"),
            ("[2001:db8::1]:443", "2001:0db8:0000:0000:0000:0000:0000:0001"),
            ("fe80::1%eth0", "fe80:0000:0000:0000:0000:0000:0000:0001"),
        ],
    )
    def test_ports_and_zones_are_stripped(self, value: str, expected: str) -> None:
        assert normalize_ip_address(value).normalized == expected

    @pytest.mark.parametrize(
        "value",
        ["203.0.113.5", "::ffff:203.0.113.5", "2001:db8::1", "fe80::1%eth0", "not-an-ip", "localhost"],
    )
    def test_normalization_is_idempotent(self, value: str) -> None:
        once = normalize_ip_address(value).normalized
        assert normalize_ip_address(once).normalized == once


class TestResolveClientIP:
    """Header precedence and fallbacks."""

    def test_forwarded_for_wins_and_uses_left_most_entry(self) -> None:
        headers = {
            "X-Forwarded-For": "203.0.113.5, 10.0.0.1, 10.0.0.2",
            "X-Real-IP": "198.51.100.7",
        }
        info = resolve_client_ip(headers, "10.0.0.99")
        assert info.normalized == "203.0.113.5"
        assert info.source == "x-forwarded-for"

    def test_header_lookup_is_case_insensitive(self) -> None:
        info = resolve_client_ip({"x-REAL-ip": "198.51.100.7"}, None)
        assert info.normalized == "198.51.100.7"
        assert info.source == "x-real-ip"

    def test_cdn_header_used_when_standard_headers_absent(self) -> None:
        info = resolve_client_ip({"CF-Connecting-IP": "198.51.100.8"}, "10.0.0.1")
        assert info.normalized == "198.51.100.8"
        assert info.source == "cf-connecting-ip"

    def test_headers_ignored_without_proxy_trust(self) -> None:
        info = resolve_client_ip(
            {"X-Forwarded-For": "203.0.113.5"},
            "198.51.100.9",
            IPExtractionOptions(trust_proxy=False),
        )
        assert info.normalized == "198.51.100.9"
        assert info.source == "connection"

    def test_geo_headers_imply_upstream_resolution(self) -> None:
        info = resolve_client_ip(
            {"X-Vercel-IP-Country": "DE", "X-Vercel-Forwarded-For": "203.0.113.77"},
            None,
            IPExtractionOptions(trust_proxy=False),
        )
        assert info.normalized == "203.0.113.77"
        assert info.source == "geo"

    def test_dev_fallback(self) -> None:
        info = resolve_client_ip({}, None, IPExtractionOptions(dev_fallback_ip="127.0.0.1"))
        assert info.normalized == "127.0.0.1"
        assert info.source == "dev_fallback"

    def test_sentinel_when_nothing_resolves(self) -> None:
        info = resolve_client_ip(None, None)
        assert info.normalized == "0.0.0.0"
        assert info.source == "sentinel"

    def test_unparseable_header_falls_through_to_next_candidate(self) -> None:
        info = resolve_client_ip(
            {"X-Forwarded-For": "unknown", "X-Real-IP": "198.51.100.7"}, "198.51.100.9"
        )
        assert info.normalized == "198.51.100.7"
        assert info.source == "x-real-ip"

    def test_unparseable_headers_fall_through_to_peer(self) -> None:
        info = resolve_client_ip(
            {"X-Forwarded-For": "unknown", "CF-Connecting-IP": "_hidden"}, "198.51.100.9"
        )
        assert info.normalized == "198.51.100.9"
        assert info.source == "connection"

    def test_only_garbage_is_reported_invalid(self) -> None:
        info = resolve_client_ip({"X-Forwarded-For": "unknown"}, None)
        assert info.is_valid is False
        assert info.source == "x-forwarded-for"
        assert info.limit_key == "0.0.0.0"

    def test_extractor_order(self) -> None:
        names = header_extractor_names()
        assert names[0] == "x-forwarded-for"
        assert names.index("x-real-ip") < names.index("cf-connecting-ip")
        assert names[-1] == "fastly-client-ip"


class TestHelpers:
    def test_hash_is_stable_and_short(self) -> None:
        assert hash_ip_address("203.0.113.5") == hash_ip_address("203.0.113.5")
        assert len(hash_ip_address("203.0.113.5")) == 16
        assert hash_ip_address("203.0.113.5") != hash_ip_address("203.0.113.6")

    def test_region_info(self) -> None:
        assert extract_region_info({"CF-IPCountry": "BR"}) == "BR"
        assert extract_region_info({}) is None

    def test_log_format_never_contains_raw_address(self) -> None:
        info = normalize_ip_address("203.0.113.5")
        formatted = format_ip_for_log(info)
        assert "203.0.113.5" not in formatted
        assert "ipv4" in formatted
