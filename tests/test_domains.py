import json

import pytest

from tunproxy.domains import (
    ADDED_DOMAIN_KEY,
    REMOVED_DOMAIN_KEY,
    DomainContext,
    FileStore,
    MemoryStore,
    Options,
    parse_domain_list,
)


def stored(store, key):
    raw = store.load(key)
    return json.loads(raw) if raw else []


def make_context(*domains):
    store = MemoryStore()
    return DomainContext(store, domains), store


def test_options_defaults_are_empty():
    options = Options()
    assert options.hostname == ""
    assert options.port == 0


def test_memory_store_round_trip():
    store = MemoryStore()
    assert store.load("k") == ""
    store.save("k", "v")
    assert store.load("k") == "v"


def test_file_store_round_trip(tmp_path):
    path = tmp_path / "data.json"
    store = FileStore(path)
    assert store.load("missing") == ""
    store.save("a", "1")
    store.save("b", "2")
    reopened = FileStore(path)
    assert reopened.load("a") == "1"
    assert reopened.load("b") == "2"


def test_file_store_rejects_non_object(tmp_path):
    path = tmp_path / "data.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        FileStore(path).load("a")


def test_parse_domain_list():
    text = "google.com\r\nyoutube.com\n\nexample.org\n"
    assert parse_domain_list(text) == {"google.com", "youtube.com", "example.org"}


def test_add_new_domain_is_recorded():
    context, store = make_context("google.com")
    context.add_domain("new.org")
    assert "new.org" in context.blocked_domains
    assert stored(store, ADDED_DOMAIN_KEY) == ["new.org"]
    assert stored(store, REMOVED_DOMAIN_KEY) == []


def test_add_existing_domain_changes_nothing():
    context, store = make_context("google.com")
    context.add_domain("google.com")
    assert store.load(ADDED_DOMAIN_KEY) == ""


def test_remove_base_domain_is_recorded():
    context, store = make_context("google.com")
    context.remove_domain("google.com")
    assert "google.com" not in context.blocked_domains
    assert stored(store, REMOVED_DOMAIN_KEY) == ["google.com"]


def test_remove_added_domain_cancels_addition():
    context, store = make_context()
    context.add_domain("new.org")
    context.remove_domain("new.org")
    assert "new.org" not in context.blocked_domains
    assert stored(store, ADDED_DOMAIN_KEY) == []
    assert stored(store, REMOVED_DOMAIN_KEY) == []


def test_readd_removed_domain_cancels_removal():
    context, store = make_context("google.com")
    context.remove_domain("google.com")
    context.add_domain("google.com")
    assert "google.com" in context.blocked_domains
    assert stored(store, REMOVED_DOMAIN_KEY) == []
    assert stored(store, ADDED_DOMAIN_KEY) == []


def test_merge_applies_and_prunes_changes():
    store = MemoryStore(
        {
            ADDED_DOMAIN_KEY: json.dumps(["a.com", "base.com"]),
            REMOVED_DOMAIN_KEY: json.dumps(["other.com", "gone.com"]),
        }
    )
    context = DomainContext(store, ["base.com", "other.com"])
    context.merge_domains()
    assert context.blocked_domains == {"base.com", "a.com"}
    assert stored(store, ADDED_DOMAIN_KEY) == ["a.com"]
    assert stored(store, REMOVED_DOMAIN_KEY) == ["other.com"]


def test_merge_with_invalid_json_raises():
    store = MemoryStore({ADDED_DOMAIN_KEY: "not json"})
    with pytest.raises(ValueError):
        DomainContext(store).merge_domains()


def test_search_domain_limits_and_filters():
    domains = [f"site{i}.example.com" for i in range(25)] + ["unrelated.org"]
    context, _ = make_context(*domains)
    found = context.search_domain("example")
    assert len(found) == 10
    assert all("example" in item for item in found)
    assert set(found) <= set(domains)


def test_search_domain_no_match():
    context, _ = make_context("google.com")
    assert context.search_domain("nothing") == []