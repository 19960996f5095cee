import pytest

from reqflow.exceptions import MalformedResponseError
from reqflow.interceptors import (
    BearerTokenInterceptor,
    CsrfTokenInterceptor,
    HeaderInterceptor,
    Interceptor,
    InterceptorChain,
    LoggingInterceptor,
    UnwrapInterceptor,
)
from reqflow.request import RequestDescriptor
from reqflow.transport import TransportResponse


class RecordingInterceptor(Interceptor):
    """Append its name to a shared log on both hooks."""

    def __init__(self, name: str, journal: list[str]) -> None:
        self.name = name
        self.journal = journal

    async def on_request(self, descriptor):
        self.journal.append(f"request:{self.name}")
        return descriptor.with_headers({"x-last": self.name})

    async def on_response(self, data, *, response, descriptor):
        self.journal.append(f"response:{self.name}")
        return {**data, self.name: True}


@pytest.fixture
def descriptor() -> RequestDescriptor:
    return RequestDescriptor(address="https://api.test/items")


@pytest.mark.asyncio
async def test_chain_runs_hooks_in_registration_order(descriptor):
    journal: list[str] = []
    chain = InterceptorChain([RecordingInterceptor("a", journal)])
    chain.use(RecordingInterceptor("b", journal))

    prepared = await chain.run_request(descriptor)
    data = await chain.run_response(TransportResponse(status=200), {}, prepared)

    assert journal == ["request:a", "request:b", "response:a", "response:b"]
    assert prepared.headers["x-last"] == "b"
    assert data == {"a": True, "b": True}


@pytest.mark.asyncio
async def test_chain_remove_and_clear(descriptor):
    journal: list[str] = []
    first = RecordingInterceptor("a", journal)
    chain = InterceptorChain([first, RecordingInterceptor("b", journal)])
    chain.remove(first)
    assert len(chain) == 1
    chain.clear()
    assert await chain.run_request(descriptor) is descriptor
    assert journal == []


@pytest.mark.asyncio
async def test_raising_hook_stops_the_chain(descriptor):
    journal: list[str] = []

    class Reject(Interceptor):
        async def on_request(self, descriptor):
            raise PermissionError("blocked")

    chain = InterceptorChain([Reject(), RecordingInterceptor("after", journal)])
    with pytest.raises(PermissionError):
        await chain.run_request(descriptor)
    assert journal == []


@pytest.mark.asyncio
async def test_header_interceptor_keeps_caller_headers():
    interceptor = HeaderInterceptor({"accept": "application/json", "x-client": "reqflow"})
    descriptor = RequestDescriptor(address="https://api.test", headers={"x-client": "mine"})

    prepared = await interceptor.on_request(descriptor)

    assert prepared.headers == {"accept": "application/json", "x-client": "mine"}


@pytest.mark.asyncio
async def test_bearer_token_is_resolved_on_every_call(descriptor):
    tokens = iter(["first", "second"])

    async def provider():
        return next(tokens)

    interceptor = BearerTokenInterceptor(provider)

    assert (await interceptor.on_request(descriptor)).headers["Authorization"] == "Bearer first"
    assert (await interceptor.on_request(descriptor)).headers["Authorization"] == "Bearer second"


@pytest.mark.asyncio
async def test_bearer_token_missing_leaves_descriptor_untouched(descriptor):
    interceptor = BearerTokenInterceptor(lambda: None)
    assert await interceptor.on_request(descriptor) is descriptor


@pytest.mark.asyncio
async def test_csrf_token_only_on_state_changing_verbs():
    interceptor = CsrfTokenInterceptor(lambda: "csrf-123")

    get = await interceptor.on_request(RequestDescriptor(address="https://api.test"))
    post = await interceptor.on_request(RequestDescriptor(address="https://api.test", verb="POST"))

    assert "X-CSRF-Token" not in get.headers
    assert post.headers["X-CSRF-Token"] == "csrf-123"


@pytest.mark.asyncio
async def test_unwrap_interceptor(descriptor):
    interceptor = UnwrapInterceptor()
    response = TransportResponse(status=200)

    assert await interceptor.on_response(
        {"code": 0, "data": [1, 2]}, response=response, descriptor=descriptor
    ) == [1, 2]
    with pytest.raises(MalformedResponseError):
        await interceptor.on_response({"code": 0}, response=response, descriptor=descriptor)


@pytest.mark.asyncio
async def test_logging_interceptor_passes_values_through(descriptor):
    interceptor = LoggingInterceptor()
    prepared = await interceptor.on_request(descriptor.with_headers({"Authorization": "secret"}))
    data = await interceptor.on_response(
        {"a": 1}, response=TransportResponse(status=200), descriptor=prepared
    )
    assert data == {"a": 1}
