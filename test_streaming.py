"""
Tests for the stream decoder, the dispatch queue and the provider clients.
"""

import asyncio
import json
import sys
import time
from pathlib import Path

import httpx
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from llm_bridge.llm import (
    AuthenticationError,
    DispatchQueue,
    ProviderError,
    StreamDecoder,
    StreamProtocolError,
    parse_frame,
)
from llm_bridge.llm.providers import AnthropicClient, OpenAIEmbeddingClient, messages_to_prompt
from llm_bridge.llm.streaming import DecoderState, FrameKind


def sse(*frames):
    return b''.join(frame.encode('utf-8') + b'\n\n' for frame in frames)


def data(completion):
    return 'data: ' + json.dumps({'completion': completion, 'stop_reason': None})


async def chunked(payload, size):
    for i in range(0, len(payload), size):
        yield payload[i:i + size]


def decode(payload, size=7):
    deltas = []
    decoder = StreamDecoder(on_delta=lambda delta, full: deltas.append((delta, full)))
    result = asyncio.run(decoder.decode(chunked(payload, size)))
    return result, deltas, decoder


# Stream decoder

@pytest.mark.parametrize('size', [1, 5, 4096])
def test_stream_delta_reconstruction(size):
    payload = sse(data('Hi'), data('Hi there'), 'data: [DONE]')

    result, deltas, decoder = decode(payload, size)

    assert result == 'Hi there'
    assert deltas == [('Hi', 'Hi'), (' there', 'Hi there')]
    assert decoder.state is DecoderState.DONE


def test_stream_skips_leading_blank_lines():
    result, deltas, _ = decode(b'\n\n\n' + sse(data('Hello')))
    assert result == 'Hello'
    assert deltas == [('Hello', 'Hello')]


def test_stream_handles_multibyte_characters_split_across_chunks():
    result, deltas, _ = decode(sse(data('héllo'), data('héllo ✓')), size=1)
    assert result == 'héllo ✓'
    assert [delta for delta, _ in deltas] == ['héllo', ' ✓']


def test_stream_accepts_final_frame_without_trailing_blank_line():
    result, _, _ = decode(data('Hi').encode('utf-8'))
    assert result == 'Hi'


def test_stream_truncated_mid_frame_is_rejected():
    payload = sse(data('Hi')) + b'data: {"completion": "Hi th'

    with pytest.raises(StreamProtocolError):
        decode(payload)


def test_stream_leftover_after_done_is_rejected():
    payload = sse(data('Hi'), 'data: [DONE]') + b'garbage'

    with pytest.raises(StreamProtocolError):
        decode(payload)


def test_stream_error_frame_is_raised():
    with pytest.raises(StreamProtocolError, match='overloaded'):
        decode(sse(data('Hi'), 'error: overloaded'))


def test_stream_unknown_frame_is_rejected():
    with pytest.raises(StreamProtocolError):
        decode(sse('event: ping'))


def test_stream_non_cumulative_text_is_rejected():
    deltas = []
    decoder = StreamDecoder(on_delta=lambda delta, full: deltas.append(delta))

    with pytest.raises(StreamProtocolError):
        asyncio.run(decoder.decode(chunked(sse(data('Hi there'), data('Bye')), 64)))

    assert deltas == ['Hi there']
    assert decoder.state is DecoderState.ERRORED


def test_stream_provider_exception_is_raised():
    with pytest.raises(StreamProtocolError, match='overloaded_error'):
        decode(sse('data: ' + json.dumps({'exception': 'overloaded_error'})))


def test_stream_async_listener_is_awaited_in_order():
    seen = []

    async def listener(delta, full):
        await asyncio.sleep(0)
        seen.append(delta)

    decoder = StreamDecoder(on_delta=listener)
    payload = sse(data('a'), data('ab'), data('abc'), 'data: [DONE]')

    assert asyncio.run(decoder.decode(chunked(payload, 3))) == 'abc'
    assert seen == ['a', 'b', 'c']


def test_stream_decoder_is_single_use():
    decoder = StreamDecoder()

    async def run():
        await decoder.feed(sse(data('Hi')))
        assert await decoder.finish() == 'Hi'
        await decoder.feed(sse(data('Hi again')))

    with pytest.raises(StreamProtocolError):
        asyncio.run(run())


def test_parse_frame():
    assert parse_frame(data('Hi')).kind is FrameKind.DATA
    assert parse_frame(data('Hi')).completion == 'Hi'
    assert parse_frame('data: [DONE]').kind is FrameKind.DONE

    error = parse_frame('error: rate limited')
    assert error.kind is FrameKind.ERROR
    assert error.message == 'rate limited'

    with pytest.raises(StreamProtocolError):
        parse_frame('data: {not json')
    with pytest.raises(StreamProtocolError):
        parse_frame('data: {"stop_reason": "stop_sequence"}')


# Dispatch queue

class Tracker:
    def __init__(self):
        self.active = 0
        self.peak = 0
        self.started = []

    async def task(self, i, duration=0.01):
        self.started.append(i)
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(duration)
        self.active -= 1
        return i


def test_queue_never_exceeds_concurrency():
    queue = DispatchQueue(max_concurrency=2)
    tracker = Tracker()

    async def run():
        return await asyncio.gather(*(queue.submit(lambda i=i: tracker.task(i)) for i in range(8)))

    assert asyncio.run(run()) == list(range(8))
    assert tracker.peak == 2
    assert queue.get_stats() == {'max_concurrency': 2, 'pending': 0, 'in_flight': 0, 'completed': 8}


def test_queue_runs_tasks_in_submission_order():
    queue = DispatchQueue(max_concurrency=1)
    tracker = Tracker()

    async def run():
        await asyncio.gather(*(queue.submit(lambda i=i: tracker.task(i, 0)) for i in range(5)))

    asyncio.run(run())
    assert tracker.started == [0, 1, 2, 3, 4]


def test_queue_late_arrival_waits_behind_queued_tasks():
    queue = DispatchQueue(max_concurrency=1)
    tracker = Tracker()
    late = []

    async def first():
        # Submitted while 1..3 are waiting, right before the slot frees up
        late.append(asyncio.ensure_future(queue.submit(lambda: tracker.task(4, 0))))
        return await tracker.task(0, 0)

    async def run():
        await asyncio.gather(
            queue.submit(first),
            *(queue.submit(lambda i=i: tracker.task(i, 0)) for i in range(1, 4)),
        )
        await late[0]

    asyncio.run(run())
    assert tracker.started == [0, 1, 2, 3, 4]


def test_queue_post_call_delay_holds_the_slot():
    queue = DispatchQueue(max_concurrency=1, post_call_delay=0.05)
    tracker = Tracker()

    async def run():
        start = time.monotonic()
        await asyncio.gather(queue.submit(lambda: tracker.task(0, 0)), queue.submit(lambda: tracker.task(1, 0)))
        return time.monotonic() - start

    assert asyncio.run(run()) >= 0.09


def test_queue_releases_slot_when_task_fails():
    queue = DispatchQueue(max_concurrency=1)

    async def boom():
        raise ValueError("provider down")

    async def ok():
        return 'ok'

    async def run():
        with pytest.raises(ValueError):
            await queue.submit(boom)
        return await queue.submit(ok)

    assert asyncio.run(run()) == 'ok'
    assert queue.in_flight == 0


@pytest.mark.parametrize('kwargs', [
    {'max_concurrency': 0},
    {'max_concurrency': 2, 'post_call_delay': -1},
])
def test_queue_rejects_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        DispatchQueue(**kwargs)


# Providers

def make_anthropic(handler, **kwargs):
    transport = httpx.MockTransport(handler)
    client = AnthropicClient(api_key='test-key', http_client=httpx.AsyncClient(transport=transport), **kwargs)
    client.retry_delay = 0
    return client


def test_anthropic_completion_request():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={'completion': ' Hello!', 'stop_reason': 'stop_sequence'})

    client = make_anthropic(handler)
    result = asyncio.run(client.complete('\n\nHuman: Hi\n\nAssistant:', {'model': 'claude-v1', 'top_p': None}))

    assert result == ' Hello!'
    assert requests[0].headers['x-api-key'] == 'test-key'
    assert json.loads(requests[0].content) == {'model': 'claude-v1', 'prompt': '\n\nHuman: Hi\n\nAssistant:'}


def test_anthropic_raw_api_returns_whole_response():
    requests = []
    payload = {'completion': ' Hello!', 'stop_reason': 'stop_sequence', 'model': 'claude-v1'}

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=payload)

    client = make_anthropic(handler)
    result = asyncio.run(client.complete('prompt', {'model': 'claude-v1', 'raw_api': True}))

    assert result == payload
    assert 'raw_api' not in json.loads(requests[0].content)


def test_anthropic_streamed_completion():
    def handler(request):
        assert json.loads(request.content)['stream'] is True
        return httpx.Response(
            200,
            headers={'content-type': 'text/event-stream'},
            content=sse(data('Hi'), data('Hi there'), 'data: [DONE]'),
        )

    deltas = []
    client = make_anthropic(handler)
    result = asyncio.run(client.complete(
        'prompt', {'model': 'claude-v1', 'stream': True},
        on_delta=lambda delta, full: deltas.append(delta),
    ))

    assert result == 'Hi there'
    assert deltas == ['Hi', ' there']


def test_anthropic_retries_transient_failures():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503, text='overloaded')
        return httpx.Response(200, json={'completion': 'ok'})

    client = make_anthropic(handler)

    assert asyncio.run(client.complete('prompt', {'model': 'claude-v1'})) == 'ok'
    assert len(calls) == 2


def test_anthropic_auth_failure_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={'error': {'type': 'authentication_error'}})

    client = make_anthropic(handler)

    with pytest.raises(AuthenticationError):
        asyncio.run(client.complete('prompt', {'model': 'claude-v1'}))
    assert len(calls) == 1


def test_anthropic_stream_http_error():
    client = make_anthropic(lambda request: httpx.Response(500, text='internal error'))

    with pytest.raises(ProviderError, match='500'):
        asyncio.run(client.complete('prompt', {'model': 'claude-v1', 'stream': True}))


def test_anthropic_requires_api_key(monkeypatch):
    monkeypatch.delenv('ANTHROPIC_API_KEY', raising=False)
    client = AnthropicClient()

    with pytest.raises(AuthenticationError):
        asyncio.run(client.complete('prompt', {'model': 'claude-v1'}))


def test_messages_to_prompt():
    prompt = messages_to_prompt([
        {'role': 'system', 'content': 'Be brief.'},
        {'role': 'user', 'content': 'Hi'},
        {'role': 'assistant', 'content': 'Hello'},
        {'role': 'user', 'content': 'Bye'},
    ])

    assert prompt == (
        "\n\nHuman: Be brief.\n\nHuman: Hi\n\nAssistant: Hello\n\nHuman: Bye\n\nAssistant:"
    )

    with pytest.raises(ValueError):
        messages_to_prompt([{'role': 'tool', 'content': 'x'}])


def test_openai_embedding():
    def handler(request):
        assert request.headers['authorization'] == 'Bearer test-key'
        assert json.loads(request.content) == {'model': 'text-embedding-ada-002', 'input': 'Hello'}
        return httpx.Response(200, json={'data': [{'embedding': [0.1, 0.2, 0.3]}]})

    client = OpenAIEmbeddingClient(
        api_key='test-key',
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    assert asyncio.run(client.complete('Hello', {'model': 'text-embedding-ada-002'})) == [0.1, 0.2, 0.3]


def test_openai_embedding_raw_api():
    payload = {'data': [{'embedding': [0.5]}], 'usage': {'total_tokens': 1}}

    def handler(request):
        assert 'raw_api' not in json.loads(request.content)
        return httpx.Response(200, json=payload)

    client = OpenAIEmbeddingClient(
        api_key='test-key',
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    assert asyncio.run(client.complete('Hello', {'model': 'ada', 'raw_api': True})) == payload


def test_openai_embedding_bad_response():
    client = OpenAIEmbeddingClient(
        api_key='test-key',
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={'data': []})
        )),
    )
    client.retry_delay = 0

    with pytest.raises(ProviderError):
        asyncio.run(client.complete('Hello', {'model': 'text-embedding-ada-002'}))
