"""Protocol interfaces for the collaborators of the voice pipeline."""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

from models import AudioFrame, UsageRecord, UsageStatus


class DeepgramAuth(Protocol):
    async def get_api_key(self) -> str: ...

    async def validate_usage(self) -> UsageStatus: ...

    async def log_usage(self, record: UsageRecord) -> None: ...


class Transport(Protocol):
    close_code: Optional[int]
    close_reason: str

    async def send(self, message: Union[bytes, str]) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def __aiter__(self) -> AsyncIterator[Union[bytes, str]]: ...


TransportFactory = Callable[..., Awaitable[Transport]]


class Recorder(Protocol):
    def start(self, on_frame: Callable[[AudioFrame], None]) -> None: ...

    def stop(self) -> None: ...

