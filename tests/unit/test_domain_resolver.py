"""Tests for seed resolution and URL normalization."""

import pytest

from sitecorpus.exceptions import InvalidSeedError
from sitecorpus.services import domain_resolver


class TestResolve:
    """Test resolve() function."""

    def test_bare_domain_gets_https(self):
        seed = domain_resolver.resolve("Example.com")

        assert seed.seed_url == "https://example.com/"
        assert seed.host == "example.com"
        assert seed.base_domain == "example.com"

    def test_www_is_stripped_from_base_domain(self):
        seed = domain_resolver.resolve("https://www.Acme.com/about/")

        assert seed.seed_url == "https://www.acme.com/about"
        assert seed.host == "www.acme.com"
        assert seed.base_domain == "acme.com"

    def test_subdomains_are_distinct_websites(self):
        assert domain_resolver.resolve("blog.acme.com").base_domain == "blog.acme.com"

    def test_port_is_kept_in_seed_url(self):
        seed = domain_resolver.resolve("acme.com:8080")

        assert seed.seed_url == "https://acme.com:8080/"
        assert seed.base_domain == "acme.com"

    def test_query_is_kept(self):
        seed = domain_resolver.resolve("http://acme.com/shop?page=2#top")
        assert seed.seed_url == "http://acme.com/shop?page=2"

    @pytest.mark.parametrize(
        "seed",
        [
            "",
            "   ",
            "not a domain",
            "localhost",
            "ftp://acme.com",
            "https://.com",
            "https://acme..com",
            "https://acme.com:99999",
        ],
    )
    def test_invalid_seeds_raise(self, seed):
        with pytest.raises(InvalidSeedError):
            domain_resolver.resolve(seed)

    def test_invalid_seed_is_a_value_error(self):
        with pytest.raises(ValueError):
            domain_resolver.resolve("nope")


class TestNormalizeUrl:
    """Test normalize_url() function."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("HTTPS://Acme.COM/Path/", "https://acme.com/Path"),
            ("https://acme.com", "https://acme.com/"),
            ("https://acme.com/", "https://acme.com/"),
            ("https://acme.com/a/b/?q=1#frag", "https://acme.com/a/b?q=1"),
            ("  https://acme.com/x  ", "https://acme.com/x"),
        ],
    )
    def test_normalization(self, url, expected):
        assert domain_resolver.normalize_url(url) == expected

    def test_is_idempotent(self):
        once = domain_resolver.normalize_url("HTTP://ACME.com/a//")
        assert domain_resolver.normalize_url(once) == once


class TestSameDomain:
    """Test is_same_domain() and helpers."""

    def test_www_variant_matches(self):
        assert domain_resolver.is_same_domain("https://www.acme.com/x", "acme.com")

    def test_subdomain_does_not_match(self):
        assert not domain_resolver.is_same_domain("https://shop.acme.com/", "acme.com")

    def test_foreign_domain_does_not_match(self):
        assert not domain_resolver.is_same_domain("https://elsewhere.org/", "acme.com")

    def test_no_host_does_not_match(self):
        assert not domain_resolver.is_same_domain("mailto:sales@acme.com", "acme.com")

    def test_path_of(self):
        assert domain_resolver.path_of("https://acme.com/about?x=1") == "/about"
        assert domain_resolver.path_of("https://acme.com") == "/"

    def test_base_domain(self):
        assert domain_resolver.base_domain("https://www.acme.com/shop") == "acme.com"


class TestValidateDisplayName:
    """Test validate_display_name() function."""

    def test_defaults_when_missing(self):
        assert domain_resolver.validate_display_name(None, "acme.com") == "acme.com"

    def test_trims(self):
        assert domain_resolver.validate_display_name("  Acme Corp ", "x") == "Acme Corp"

    def test_blank_rejected(self):
        with pytest.raises(InvalidSeedError, match="empty"):
            domain_resolver.validate_display_name("   ", "x")

    def test_too_long_rejected(self):
        with pytest.raises(InvalidSeedError, match="512"):
            domain_resolver.validate_display_name("a" * 513, "x")

    def test_max_length_accepted(self):
        assert len(domain_resolver.validate_display_name("a" * 512, "x")) == 512
