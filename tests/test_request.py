import pytest

from reqflow.exceptions import ConfigurationError
from reqflow.request import Priority, RequestDescriptor, Verb, build_cache_key, cache_key_prefix


def test_cache_key_ignores_parameter_order():
    first = build_cache_key(address="https://api.test/items", verb="GET", params={"a": 1, "b": 2})
    second = build_cache_key(address="https://api.test/items", verb="get", params={"b": 2, "a": 1})
    assert first == second


def test_cache_key_differs_by_verb_params_and_body():
    base = build_cache_key(address="https://api.test/items", verb="GET", params={"a": 1})
    assert base != build_cache_key(address="https://api.test/items", verb="HEAD", params={"a": 1})
    assert base != build_cache_key(address="https://api.test/items", verb="GET", params={"a": 2})
    assert build_cache_key(address="https://api.test/items", verb="POST", body={"x": 1}) != (
        build_cache_key(address="https://api.test/items", verb="POST", body={"x": 2})
    )


def test_cache_key_drops_ignored_and_none_params():
    key = build_cache_key(
        address="https://api.test/items",
        verb="GET",
        params={"a": 1, "_ts": 123, "empty": None},
        ignored_params={"_ts"},
    )
    assert key == build_cache_key(address="https://api.test/items", verb="GET", params={"a": 1})


def test_cache_key_prefix_matches_every_variant():
    prefix = cache_key_prefix(address="https://api.test/items", verb="get")
    key = build_cache_key(address="https://api.test/items", verb="GET", params={"page": 3})
    assert key.startswith(prefix)
    assert not build_cache_key(address="https://api.test/items/1", verb="GET").startswith(prefix)


def test_descriptor_coerces_verb_and_priority():
    descriptor = RequestDescriptor(address="https://api.test/items", verb="post", priority="high")
    assert descriptor.verb is Verb.POST
    assert descriptor.priority is Priority.HIGH
    assert Priority.HIGH.rank < Priority.NORMAL.rank < Priority.LOW.rank


@pytest.mark.parametrize(
    "kwargs",
    [
        {"address": ""},
        {"address": "https://api.test", "verb": "FETCH"},
        {"address": "https://api.test", "priority": "urgent"},
    ],
)
def test_descriptor_rejects_invalid_fields(kwargs):
    with pytest.raises(ConfigurationError):
        RequestDescriptor(**kwargs)


def test_descriptor_evolve_and_with_headers_return_copies():
    descriptor = RequestDescriptor(address="https://api.test/items", headers={"accept": "json"})
    updated = descriptor.with_headers({"x-trace": "1"})
    assert updated.headers == {"accept": "json", "x-trace": "1"}
    assert descriptor.headers == {"accept": "json"}
    assert descriptor.evolve(params={"a": 1}).key != descriptor.key


@pytest.mark.parametrize("verb", list(Verb))
def test_descriptor_accepts_verb_members(verb):
    descriptor = RequestDescriptor(address="https://api.test/items", verb=verb)
    assert descriptor.verb is verb
    assert descriptor.evolve(address="https://api.test/other").verb is verb
    assert descriptor.with_headers({"x-trace": "1"}).verb is verb


def test_descriptor_defaults_to_get():
    descriptor = RequestDescriptor(address="https://api.test/items")
    assert descriptor.verb is Verb.GET
    assert descriptor.key.startswith("GET https://api.test/items")
