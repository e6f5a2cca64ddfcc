"""
Streaming Response Decoder

Reassembles a server-sent event stream of cumulative completions into
ordered text deltas.

Wire format: frames separated by a blank line, each one of

    data: {"completion": "<full text so far>", ...}
    data: [DONE]
    error: <message>

The provider resends the whole completion in every frame, so the delta for
a frame is the suffix added since the previous one.
"""

import json
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, Optional

from .client import DeltaListener, StreamProtocolError

logger = logging.getLogger(__name__)

FRAME_DELIMITER = b'\n\n'


class DecoderState(Enum):
    AWAITING_FRAME = 'awaiting_frame'
    EMITTING_DELTA = 'emitting_delta'
    DONE = 'done'
    ERRORED = 'errored'


class FrameKind(Enum):
    DATA = 'data'
    ERROR = 'error'
    DONE = 'done'


@dataclass
class StreamFrame:
    """One decoded server-sent frame."""
    kind: FrameKind
    completion: Optional[str] = None
    message: Optional[str] = None


def parse_frame(text: str) -> StreamFrame:
    """
    Classify a single frame.

    Args:
        text: Frame text without the trailing blank line

    Returns:
        StreamFrame

    Raises:
        StreamProtocolError: If the frame has an unexpected shape
    """
    text = text.strip()

    if text.startswith('error:'):
        return StreamFrame(kind=FrameKind.ERROR, message=text[len('error:'):].strip())

    if text.startswith('data: [DONE]'):
        return StreamFrame(kind=FrameKind.DONE)

    if text.startswith('data: {'):
        try:
            payload = json.loads(text[len('data:'):].strip())
        except ValueError as e:
            raise StreamProtocolError(f"Invalid JSON in data frame: {e}") from e

        if payload.get('exception'):
            raise StreamProtocolError(f"Provider reported an exception: {payload['exception']}")

        completion = payload.get('completion')
        if isinstance(completion, str):
            return StreamFrame(kind=FrameKind.DATA, completion=completion)

    logger.warning(f"Unexpected data event format: {text[:200]!r}")
    raise StreamProtocolError("Unexpected data event format")


class StreamDecoder:
    """
    Incremental decoder for one streamed response.

    Usage:
        decoder = StreamDecoder(on_delta=print_delta)
        completion = await decoder.decode(response.aiter_bytes())

    Or feed chunks by hand with feed() and call finish() at end of stream.
    The listener is awaited for each delta before the next frame is read.
    A decoder is good for a single stream.
    """

    def __init__(self, on_delta: Optional[DeltaListener] = None):
        self.on_delta = on_delta
        self.state = DecoderState.AWAITING_FRAME
        self.last_completion = ''
        self._buffer = b''

    async def decode(self, chunks: AsyncIterable[bytes]) -> str:
        """Consume the whole stream and return the final completion."""
        async for chunk in chunks:
            await self.feed(chunk)
        return await self.finish()

    async def feed(self, chunk: bytes):
        """Add a chunk of raw bytes and handle every complete frame in the buffer."""
        self._check_open()
        if chunk:
            self._buffer += chunk
        await self._drain(end_of_stream=False)

    async def finish(self) -> str:
        """
        Signal end of stream.

        Returns:
            The full completion text

        Raises:
            StreamProtocolError: If unprocessed data is left over
        """
        self._check_open()
        await self._drain(end_of_stream=True)

        leftover = self._buffer.strip()
        if leftover:
            self.state = DecoderState.ERRORED
            logger.warning(f"Unexpected end of stream, with unprocessed data - {leftover[:200]!r}")
            raise StreamProtocolError("Unexpected end of stream, with unprocessed data")

        self.state = DecoderState.DONE
        return self.last_completion

    def _check_open(self):
        if self.state in (DecoderState.DONE, DecoderState.ERRORED):
            raise StreamProtocolError(f"Stream decoder already {self.state.value}")

    async def _drain(self, end_of_stream: bool):
        while True:
            # Leading blank-line padding
            self._buffer = self._buffer.lstrip(b'\n')

            pos = self._buffer.find(FRAME_DELIMITER)
            if pos >= 0:
                raw_frame = self._buffer[:pos]
                self._buffer = self._buffer[pos + len(FRAME_DELIMITER):]
            elif end_of_stream and self._buffer.strip():
                raw_frame = self._buffer
                self._buffer = b''
            else:
                return

            try:
                frame = parse_frame(raw_frame.decode('utf-8'))
            except UnicodeDecodeError as e:
                self.state = DecoderState.ERRORED
                raise StreamProtocolError(f"Frame is not valid UTF-8: {e}") from e
            except StreamProtocolError:
                self.state = DecoderState.ERRORED
                raise

            if frame.kind is FrameKind.ERROR:
                self.state = DecoderState.ERRORED
                raise StreamProtocolError(f"Unexpected stream request error: {frame.message}")

            if frame.kind is FrameKind.DONE:
                # Stop handling this read; the natural end of stream finishes
                return

            await self._emit(frame.completion)

    async def _emit(self, completion: str):
        if not completion.startswith(self.last_completion):
            self.state = DecoderState.ERRORED
            raise StreamProtocolError(
                "Streamed completion does not extend the previous one "
                f"({len(self.last_completion)} chars received so far)"
            )

        self.state = DecoderState.EMITTING_DELTA
        delta = completion[len(self.last_completion):]
        self.last_completion = completion

        if self.on_delta is not None:
            result = self.on_delta(delta, completion)
            if inspect.isawaitable(result):
                await result

        self.state = DecoderState.AWAITING_FRAME
