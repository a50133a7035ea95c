from __future__ import annotations

import pytest

from parley.cancel import CancelToken
from parley.errors import (
    AllProvidersFailedError,
    CredentialMissingError,
    OperationCancelledError,
    ProviderError,
    ProviderErrorKind,
)
from parley.fallback import Err, Ok, attempt, run_chain
from parley.models import Message
from parley.registry import ProviderRegistry
from tests.conftest import FakeConnector


def _send(connector):
    return connector.send([Message.user("hi")])


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_chain_puts_active_first_then_registration_order():
    a, b, c = FakeConnector("a"), FakeConnector("b"), FakeConnector("c")
    registry = ProviderRegistry([a, b, c])
    assert registry.chain() == (a, b, c)

    assert registry.set_active("C")
    assert registry.chain() == (c, a, b)


def test_chain_skips_providers_without_credentials():
    a, b = FakeConnector("a", credential=False), FakeConnector("b")
    registry = ProviderRegistry([a, b])
    assert registry.chain() == (b,)
    # default active is the first credentialed provider
    assert registry.active is b


def test_chain_without_explicit_active_is_registration_order():
    a, b, c = FakeConnector("a", credential=False), FakeConnector("b"), FakeConnector("c")
    registry = ProviderRegistry([a, b, c])
    assert registry.chain() == (b, c)

    a.credential = True
    assert registry.chain() == (a, b, c)


def test_set_active_unknown_provider_returns_false():
    registry = ProviderRegistry([FakeConnector("a")])
    assert registry.set_active("nope") is False
    assert registry.active.name == "a"


def test_duplicate_provider_names_are_rejected():
    registry = ProviderRegistry([FakeConnector("a")])
    with pytest.raises(ValueError):
        registry.register(FakeConnector("A"))


def test_chain_is_a_snapshot():
    a, b = FakeConnector("a"), FakeConnector("b")
    registry = ProviderRegistry([a, b])
    chain = registry.chain()
    registry.set_active("b")
    assert chain == (a, b)


# ---------------------------------------------------------------------------
# Attempt outcomes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_attempt_wraps_success_and_provider_failure():
    ok = await attempt(FakeConnector("a"), _send)
    assert isinstance(ok, Ok)
    assert ok.value.content == "reply from a"

    err = await attempt(FakeConnector("b", script=[RuntimeError("boom")]), _send)
    assert isinstance(err, Err)
    assert err.error.provider == "b"
    assert err.error.kind is ProviderErrorKind.UNKNOWN


@pytest.mark.asyncio
async def test_attempt_does_not_swallow_cancellation():
    cancel = CancelToken()
    cancel.cancel()
    with pytest.raises(OperationCancelledError):
        await attempt(FakeConnector("a"), lambda c: c.send([Message.user("hi")], cancel=cancel))


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fallback_ordering():
    transient = ProviderError("x", ProviderErrorKind.TRANSIENT, "503")
    a = FakeConnector("a", script=[transient])
    b = FakeConnector("b", script=[RuntimeError("bad gateway")])
    c = FakeConnector("c")
    order: list[str] = []

    async def call(connector):
        order.append(connector.name)
        return await _send(connector)

    winner, envelope = await run_chain((a, b, c), call)

    assert winner is c
    assert envelope.provider_name == "c"
    assert envelope.model_name == "fake-1"
    assert order == ["a", "b", "c"]
    assert (a.calls, b.calls, c.calls) == (1, 1, 1)


@pytest.mark.asyncio
async def test_first_success_stops_the_chain():
    a, b = FakeConnector("a"), FakeConnector("b")
    winner, _ = await run_chain((a, b), _send)
    assert winner is a
    assert b.calls == 0


@pytest.mark.asyncio
async def test_all_failing_reports_every_failure_in_order():
    a = FakeConnector("a", script=[RuntimeError("first")])
    b = FakeConnector("b", script=[RuntimeError("second")])

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await run_chain((a, b), _send)

    err = exc_info.value
    assert "All LLM providers failed" in str(err)
    assert [name for name, _ in err.failures] == ["a", "b"]
    assert [e.reason for _, e in err.failures] == ["first", "second"]


@pytest.mark.asyncio
async def test_empty_chain_is_a_credential_error():
    with pytest.raises(CredentialMissingError):
        await run_chain((), _send)


@pytest.mark.asyncio
async def test_should_continue_can_stop_the_chain():
    a = FakeConnector("a", script=[RuntimeError("boom")])
    b = FakeConnector("b")

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await run_chain((a, b), _send, should_continue=lambda err: False)

    assert b.calls == 0
    assert len(exc_info.value.failures) == 1


@pytest.mark.asyncio
async def test_missing_credential_fails_the_attempt():
    a = FakeConnector("a", credential=False)
    with pytest.raises(CredentialMissingError):
        await _send(a)
    assert a.calls == 0
