"""Channels, the byte-stream adapter, and the fan-in merger.

A Channel is an asyncio take on an unbuffered pipe between tasks: ``send``
only returns once a receiver has taken the item, so a slow consumer slows the
producer down instead of letting data pile up.
"""

import asyncio
import codecs
from typing import Generic, TypeVar

T = TypeVar("T")

# Read size for the stream adapter. Reads are not line-buffered.
CHUNK_SIZE = 4096

_CLOSED = object()


class ChannelClosed(Exception):
    """Raised on send to, double close of, or receive from a closed channel."""


class Channel(Generic[T]):
    """Rendezvous channel between asyncio tasks.

    Supports any number of senders and a single receiver. Iterating with
    ``async for`` yields items until the channel is closed.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._exhausted = False

    @property
    def closed(self) -> bool:
        """Whether close() has been called."""
        return self._closed

    async def send(self, item: T) -> None:
        """Send an item and wait until the receiver has taken it.

        Raises:
            ChannelClosed: If the channel has already been closed.
        """
        if self._closed:
            raise ChannelClosed("send on closed channel")
        self._queue.put_nowait(item)
        await self._queue.join()

    def close(self) -> None:
        """Close the channel. Items already sent are still delivered.

        Raises:
            ChannelClosed: If the channel was already closed.
        """
        if self._closed:
            raise ChannelClosed("close of closed channel")
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def recv(self) -> T:
        """Receive the next item.

        Raises:
            ChannelClosed: Once the channel is closed and fully drained.
        """
        if self._exhausted:
            raise ChannelClosed("receive from closed channel")
        item = await self._queue.get()
        self._queue.task_done()
        if item is _CLOSED:
            self._exhausted = True
            raise ChannelClosed("receive from closed channel")
        return item

    async def drain(self) -> list[T]:
        """Receive every remaining item until the channel closes."""
        return [item async for item in self]

    def __aiter__(self) -> "Channel[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.recv()
        except ChannelClosed:
            raise StopAsyncIteration from None


def stream_to_channel(
    tg: asyncio.TaskGroup,
    reader: asyncio.StreamReader,
    chunk_size: int = CHUNK_SIZE,
) -> tuple[Channel[str], Channel[BaseException]]:
    """Expose a byte stream as a channel of text chunks.

    Spawns one pump task on ``tg``. Every chunk read from ``reader`` is
    decoded and sent on the data channel in arrival order. At end of stream
    both channels close without an error. If a read fails, exactly one error
    is sent on the error channel, both channels close, and no further reads
    are attempted.

    Args:
        tg: Task group that owns the pump task.
        reader: Byte stream to read, typically a subprocess pipe.
        chunk_size: Maximum number of bytes per read.

    Returns:
        tuple[Channel[str], Channel[BaseException]]: Data and error channels.
    """
    data: Channel[str] = Channel()
    errors: Channel[BaseException] = Channel()
    tg.create_task(_pump(reader, data, errors, chunk_size))
    return data, errors


async def _pump(
    reader: asyncio.StreamReader,
    data: Channel[str],
    errors: Channel[BaseException],
    chunk_size: int,
) -> None:
    # Reason: an incremental decoder keeps multi-byte characters intact when
    # a read boundary falls in the middle of one.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            try:
                chunk = await reader.read(chunk_size)
            except Exception as exc:
                await errors.send(exc)
                break
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await data.send(tail)
                break
            text = decoder.decode(chunk)
            if text:
                await data.send(text)
    finally:
        data.close()
        errors.close()


def merge(tg: asyncio.TaskGroup, *inputs: Channel[T]) -> Channel[T]:
    """Fan several channels of the same element type into one.

    One forwarding task per input relays its items to the output. The output
    is closed exactly once, after the last input has closed, so no item is
    lost. Order within an input is preserved; order across inputs is not.

    Args:
        tg: Task group that owns the forwarding tasks.
        *inputs: Channels to merge.

    Returns:
        Channel[T]: The merged channel.
    """
    output: Channel[T] = Channel()
    if not inputs:
        output.close()
        return output

    remaining = len(inputs)

    async def forward(channel: Channel[T]) -> None:
        nonlocal remaining
        async for item in channel:
            await output.send(item)
        remaining -= 1
        if remaining == 0:
            output.close()

    for channel in inputs:
        tg.create_task(forward(channel))
    return output
