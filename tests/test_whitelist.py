import ipaddress
import logging

import pytest

from lan_redirect import AddressWhitelist, WhitelistParseError, WhitelistRule, coerce_address


def test_empty_whitelist_allows_everyone():
    wl = AddressWhitelist([])
    assert wl.allow_all
    assert wl.is_allowed("8.8.8.8")
    assert wl.is_allowed("::1")


def test_ipv4_prefix_match():
    wl = AddressWhitelist(["192.168.0.0/24"])
    assert wl.is_allowed("192.168.0.57")
    assert not wl.is_allowed("192.168.1.57")


def test_host_bits_in_base_are_ignored():
    wl = AddressWhitelist(["10.1.2.3/8"])
    assert wl.is_allowed("10.200.0.1")
    assert not wl.is_allowed("11.0.0.1")


def test_ipv6_rule_does_not_match_ipv4_client():
    wl = AddressWhitelist(["::/0"])
    assert not wl.is_allowed("127.0.0.1")
    assert wl.is_allowed("2001:db8::1")


def test_ipv6_prefix_match():
    wl = AddressWhitelist(["fd00::/8"])
    assert wl.is_allowed("fd12:3456::1")
    assert not wl.is_allowed("fe80::1")


def test_wildcard_among_malformed_entries_disables_filtering():
    wl = AddressWhitelist(["garbage", "any", "10.0.0.0/8"])
    assert wl.allow_all
    assert wl.is_allowed("203.0.113.9")


def test_star_and_case_insensitive_any():
    assert AddressWhitelist(["*"]).allow_all
    assert AddressWhitelist(["  ANY "]).allow_all


def test_malformed_entries_are_skipped_with_warning(caplog):
    log = logging.getLogger("test.whitelist")
    with caplog.at_level(logging.WARNING, logger="test.whitelist"):
        wl = AddressWhitelist(["10.0.0.1", "10.0.0.0/99", "not-an-ip/8", "", "  ", "172.16.0.0/12"], log=log)
    assert len(wl.rules) == 1
    assert wl.is_allowed("172.20.1.1")
    assert not wl.is_allowed("10.0.0.1")
    assert sum("skipping whitelist entry" in r.getMessage() for r in caplog.records) == 3


def test_only_malformed_entries_means_allow_all():
    wl = AddressWhitelist(["nope", "1.2.3.4"])
    assert wl.allow_all
    assert wl.is_allowed("1.1.1.1")


def test_rule_parse_errors():
    with pytest.raises(WhitelistParseError):
        WhitelistRule.parse("10.0.0.0")
    with pytest.raises(WhitelistParseError):
        WhitelistRule.parse("10.0.0.0/8/8")
    with pytest.raises(WhitelistParseError):
        WhitelistRule.parse("10.0.0.0/33")
    with pytest.raises(WhitelistParseError):
        WhitelistRule.parse("::/129")
    with pytest.raises(WhitelistParseError):
        WhitelistRule.parse("10.0.0.0/x")


def test_rule_mask_bytes():
    rule = WhitelistRule.parse("192.168.5.9/20")
    assert rule.prefix_mask_bytes == bytes([255, 255, 240, 0])
    assert rule.base_address_bytes == bytes([192, 168, 0, 0])


def test_zero_prefix_matches_whole_family():
    wl = AddressWhitelist(["0.0.0.0/0"])
    assert wl.is_allowed("1.2.3.4")
    assert not wl.is_allowed("::1")


def test_dual_stack_mapped_address_is_treated_as_ipv4():
    wl = AddressWhitelist(["127.0.0.0/8"])
    assert wl.is_allowed("::ffff:127.0.0.1")
    assert wl.is_allowed(("::ffff:127.0.0.1", 50000, 0, 0))


def test_peername_tuple_and_objects():
    wl = AddressWhitelist(["127.0.0.0/8"])
    assert wl.is_allowed(("127.0.0.1", 4242))
    assert wl.is_allowed(ipaddress.ip_address("127.9.9.9"))
    assert not wl.is_allowed(None)
    assert not wl.is_allowed("localhost")


def test_coerce_address():
    assert coerce_address(" 10.0.0.1 ") == ipaddress.ip_address("10.0.0.1")
    assert coerce_address(()) is None
    assert coerce_address(12345) is None
