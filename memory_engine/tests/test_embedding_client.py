import asyncio
import json

import httpx
import pytest

from memory_engine.adapters.embed_hash import HashingEmbeddingProvider, hash_embed
from memory_engine.adapters.embed_openrouter import OpenRouterEmbeddingProvider
from memory_engine.adapters.embedding_cache import EmbeddingCache
from memory_engine.domain.errors import (
    ProviderContractError,
    ProviderError,
    ProviderExhaustedError,
    ProviderRateLimited,
    ValidationError,
)
from memory_engine.ports.embeddings import EmbeddingItem, EmbeddingResponse, EmbeddingUsage
from memory_engine.use_cases.embedding_client import EMPTY_PLACEHOLDER, EmbeddingClient, sanitize


class ScriptedProvider:
    """Plays back a list of outcomes; an exception instance is raised, anything else is a vector factory."""

    def __init__(self, outcomes=None, dim=8, shuffle=False):
        self.outcomes = list(outcomes or [])
        self.dim = dim
        self.shuffle = shuffle
        self.calls = []

    async def create_embeddings(self, inputs, *, model, api_key=None):
        self.calls.append((list(inputs), model))
        if self.outcomes:
            nxt = self.outcomes.pop(0)
            if isinstance(nxt, BaseException):
                raise nxt
            if isinstance(nxt, EmbeddingResponse):
                return nxt
        items = [EmbeddingItem(embedding=hash_embed(t, self.dim), index=i) for i, t in enumerate(inputs)]
        if self.shuffle:
            items = list(reversed(items))
        return EmbeddingResponse(data=items, model=model, usage=EmbeddingUsage(prompt_tokens=1, total_tokens=len(inputs)))


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _client(provider, **kw):
    kw.setdefault("sleep", RecordingSleep())
    return EmbeddingClient(provider=provider, **kw)


def test_sanitize():
    assert sanitize("  a\u0000b\x85c   d\n\n e ") == "a b c d e"
    assert sanitize("café") == "café"
    assert sanitize("x\ud800y") == "xy"
    assert sanitize(" \t\n ") == ""


def test_embed_single_and_truncation():
    client = _client(ScriptedProvider(dim=16), dimensions=4)
    res = asyncio.run(client.embed("hello world", "k"))
    assert len(res.embedding) == 4
    assert res.embedding == hash_embed("hello world", 16)[:4]
    assert res.model == client.model
    assert res.total_tokens == 1


def test_shorter_vectors_pass_through():
    client = _client(ScriptedProvider(dim=3), dimensions=1536)
    res = asyncio.run(client.embed("hello", "k"))
    assert len(res.embedding) == 3


def test_empty_single_text_is_validation_error():
    provider = ScriptedProvider()
    client = _client(provider)
    with pytest.raises(ValidationError):
        asyncio.run(client.embed(" \u0000 ", "k"))
    assert provider.calls == []


def test_batch_preserves_order_and_length():
    provider = ScriptedProvider(shuffle=True)
    client = _client(provider)
    vectors = asyncio.run(client.embed_batch(["alpha", "beta", "gamma"], "k"))

    assert len(vectors) == 3
    assert vectors == [hash_embed(t, 8) for t in ("alpha", "beta", "gamma")]


def test_batch_replaces_empty_entries_with_placeholder():
    provider = ScriptedProvider()
    client = _client(provider)
    vectors = asyncio.run(client.embed_batch(["alpha", "  ", "gamma"], "k"))

    assert len(vectors) == 3
    assert provider.calls[0][0] == ["alpha", EMPTY_PLACEHOLDER, "gamma"]
    assert asyncio.run(client.embed_batch([], "k")) == []
    with pytest.raises(ValidationError):
        asyncio.run(client.embed_batch(["", " \n"], "k"))


def test_rate_limit_is_retried_with_exponential_backoff():
    provider = ScriptedProvider([ProviderRateLimited(), ProviderRateLimited()])
    sleep = RecordingSleep()
    client = _client(provider, max_retries=3, retry_base_delay=0.5, sleep=sleep)

    res = asyncio.run(client.embed("hello", "k"))
    assert len(res.embedding) == 8
    assert len(provider.calls) == 3
    assert sleep.delays == [0.5, 1.0]


def test_rate_limit_waits_at_least_the_retry_after_hint():
    provider = ScriptedProvider([ProviderRateLimited(retry_after=3.0), ProviderRateLimited(retry_after=0.1)])
    sleep = RecordingSleep()
    client = _client(provider, max_retries=3, retry_base_delay=0.5, sleep=sleep)

    asyncio.run(client.embed("hello", "k"))
    assert sleep.delays == [3.0, 1.0]


def test_exhausted_retries_carry_last_error():
    last = ProviderRateLimited("third")
    provider = ScriptedProvider([ProviderRateLimited("first"), ProviderRateLimited("second"), last])
    client = _client(provider, max_retries=3, fallback_model=None)

    with pytest.raises(ProviderExhaustedError) as ei:
        asyncio.run(client.embed("hello", "k"))
    assert ei.value.last_error is last
    assert len(provider.calls) == 3


def test_other_provider_errors_are_not_retried():
    provider = ScriptedProvider([ProviderError("boom", status_code=500)])
    client = _client(provider)
    with pytest.raises(ProviderError):
        asyncio.run(client.embed("hello", "k"))
    assert len(provider.calls) == 1


def test_count_mismatch_is_contract_error():
    bad = EmbeddingResponse(data=[EmbeddingItem(embedding=[1.0], index=0)], model="m")
    client = _client(ScriptedProvider([bad]))
    with pytest.raises(ProviderContractError):
        asyncio.run(client.embed_batch(["a", "b"], "k"))


def test_duplicate_indices_are_contract_error():
    bad = EmbeddingResponse(
        data=[EmbeddingItem(embedding=[1.0], index=0), EmbeddingItem(embedding=[2.0], index=0)],
        model="m",
    )
    client = _client(ScriptedProvider([bad]))
    with pytest.raises(ProviderContractError):
        asyncio.run(client.embed_batch(["a", "b"], "k"))


def test_fallback_switches_model_once():
    provider = ScriptedProvider([ProviderError("primary down", status_code=503)])
    client = _client(provider, model="primary", fallback_model="secondary")

    res = asyncio.run(client.embed_with_fallback("hello", "k"))
    assert [m for _, m in provider.calls] == ["primary", "secondary"]
    assert res.model == "secondary"


def test_fallback_does_not_mask_validation_errors():
    provider = ScriptedProvider()
    client = _client(provider, fallback_model="secondary")
    with pytest.raises(ValidationError):
        asyncio.run(client.embed_with_fallback("   ", "k"))
    assert provider.calls == []


def test_batch_fallback_and_batches_keep_order():
    provider = ScriptedProvider([ProviderError("down")])
    client = _client(provider, batch_size=2, model="primary", fallback_model="secondary")

    texts = [f"text number {i}" for i in range(5)]
    vectors = asyncio.run(client.embed_in_batches(texts, "k"))

    assert vectors == [hash_embed(t, 8) for t in texts]
    assert [len(c[0]) for c in provider.calls] == [2, 2, 2, 1]
    assert provider.calls[0][1] == "primary" and provider.calls[1][1] == "secondary"


def test_embed_query_uses_cache():
    provider = ScriptedProvider()
    client = _client(provider, cache=EmbeddingCache())

    a = asyncio.run(client.embed_query("What do I like?", "k"))
    b = asyncio.run(client.embed_query("what do i like?", "k"))
    assert a == b
    assert len(provider.calls) == 1


def test_hashing_provider_through_client():
    client = _client(HashingEmbeddingProvider(dim=32))
    vectors = asyncio.run(client.embed_batch(["grant writing", "grant writing"], None))
    assert vectors[0] == vectors[1]
    assert len(vectors[0]) == 32


def _openrouter(handler):
    transport = httpx.MockTransport(handler)
    return OpenRouterEmbeddingProvider(base_url="https://example.test/api/v1/", client=httpx.AsyncClient(transport=transport))


def test_openrouter_provider_parses_and_validates():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        body = json.loads(request.content)
        data = [{"embedding": [0.1 * (i + 1)] * 4, "index": i} for i, _ in enumerate(body["input"])]
        return httpx.Response(200, json={"data": data, "model": body["model"], "usage": {"prompt_tokens": 3, "total_tokens": 3}})

    provider = _openrouter(handler)
    resp = asyncio.run(provider.create_embeddings(["a", "b"], model="m1", api_key="secret"))

    assert seen["url"] == "https://example.test/api/v1/embeddings"
    assert seen["auth"] == "Bearer secret"
    assert [it.index for it in resp.data] == [0, 1]
    assert resp.usage.total_tokens == 3


def test_openrouter_status_mapping():
    def limited(request):
        return httpx.Response(429, headers={"retry-after": "2"}, json={"error": "slow down"})

    with pytest.raises(ProviderRateLimited) as ei:
        asyncio.run(_openrouter(limited).create_embeddings(["a"], model="m", api_key="k"))
    assert ei.value.retry_after == 2.0

    def broken(request):
        return httpx.Response(500, text="oops")

    with pytest.raises(ProviderError) as ei2:
        asyncio.run(_openrouter(broken).create_embeddings(["a"], model="m", api_key="k"))
    assert ei2.value.status_code == 500
    assert not isinstance(ei2.value, ProviderRateLimited)


def test_openrouter_shape_violation_is_contract_error():
    def wrong_shape(request):
        return httpx.Response(200, json={"data": [{"vector": [1.0]}], "model": "m"})

    with pytest.raises(ProviderContractError):
        asyncio.run(_openrouter(wrong_shape).create_embeddings(["a"], model="m", api_key="k"))

    def not_json(request):
        return httpx.Response(200, text="<html>")

    with pytest.raises(ProviderContractError):
        asyncio.run(_openrouter(not_json).create_embeddings(["a"], model="m", api_key="k"))


def test_openrouter_requires_api_key():
    provider = _openrouter(lambda r: httpx.Response(200, json={}))
    with pytest.raises(ValidationError):
        asyncio.run(provider.create_embeddings(["a"], model="m", api_key=None))
