"""
Controller-side HTTP client for the worker's call and poll channels.
"""

import asyncio
from typing import List, Optional

import aiohttp

from .discovery import Endpoint
from .errors import MalformedRequestError, TransportError
from .message import Call, Event, Reply, content_type_for, decode, unpack_events


class HttpTransport:
    """
    One aiohttp session against one worker endpoint.

    send_call is only ever invoked by the request queue; poll and ping are
    used by the long-poll loop and the controller.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        wire_format: str = "json",
        call_timeout: Optional[float] = None,
        poll_timeout: Optional[float] = 10.0,
    ):
        self.endpoint = endpoint
        self.content_type = content_type_for(wire_format)
        self.call_timeout = call_timeout
        self.poll_timeout = poll_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def closed(self) -> bool:
        return self._session is None or self._session.closed

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure HTTP session exists."""
        if self._session is None or self._session.closed:
            # The call and poll channels each hold at most one request at a time.
            connector = aiohttp.TCPConnector(limit=4, force_close=False)
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"Content-Type": self.content_type, "Accept": self.content_type},
            )
        return self._session

    async def _request(self, method: str, body: Optional[bytes], timeout: Optional[float]):
        session = await self._ensure_session()
        try:
            async with session.request(
                method,
                self.endpoint.base_url,
                data=body,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                payload = await response.read()
                return response.status, payload
        except asyncio.TimeoutError:
            raise TransportError(f"{method} {self.endpoint.base_url} timed out after {timeout}s")
        except aiohttp.ClientError as e:
            raise TransportError(f"{method} {self.endpoint.base_url} failed: {e}") from e

    async def send_call(self, call: Call) -> Reply:
        status, payload = await self._request("POST", call.pack(self.content_type), self.call_timeout)
        if status == 500:
            detail = payload.decode("utf-8", errors="replace")
            try:
                decoded = decode(payload, self.content_type)
                if isinstance(decoded, dict) and decoded.get("fault"):
                    detail = str(decoded["fault"])
            except ValueError:
                pass
            raise MalformedRequestError(f"worker rejected {call.operation!r}: {detail}")
        if status != 200:
            raise TransportError(f"unexpected HTTP status {status} for {call.operation!r}")
        try:
            return Reply.unpack(payload, self.content_type)
        except ValueError as e:
            raise TransportError(f"undecodable reply for {call.operation!r}: {e}") from e

    async def poll(self) -> List[Event]:
        status, payload = await self._request("GET", None, self.poll_timeout)
        if status != 200:
            raise TransportError(f"unexpected HTTP status {status} for poll")
        try:
            return unpack_events(payload, self.content_type)
        except ValueError as e:
            raise TransportError(f"undecodable poll response: {e}") from e

    async def ping(self) -> bool:
        status, _ = await self._request("HEAD", None, self.poll_timeout)
        return status == 200

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
