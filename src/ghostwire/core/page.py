"""
Remote objects hosted by the worker: the root object (global surface) and pages.
"""

import asyncio
import base64
import html
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote_to_bytes, urlparse
from urllib.request import url2pathname

import aiohttp

from .errors import LoadError
from .events import EventBuffer
from .registry import HandleRegistry, RemoteObject
from .sandbox import compile_callable, run_script

PROTOCOL_VERSION = {"major": 1, "minor": 0, "patch": 0}

DEFAULT_USER_AGENT = "Mozilla/5.0 (Unknown; Linux) ghostwire/1.0"

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


@dataclass
class Resource:
    url: str
    status: int
    content_type: str
    body: bytes

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class ResourceLoader:
    """Fetches data:, file: and http(s): URLs for pages."""

    def __init__(self):
        self._session: Optional[aiohttp.ClientSession] = None

    async def fetch(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: Optional[float] = None) -> Resource:
        scheme = urlparse(url).scheme.lower()
        if scheme == "data":
            return self._decode_data_url(url)
        if scheme in ("http", "https"):
            return await self._fetch_http(url, headers or {}, timeout)
        if scheme in ("file", ""):
            return await self._read_file(url)
        raise LoadError(url, f"unsupported scheme {scheme!r}", code=301)

    @staticmethod
    def _decode_data_url(url: str) -> Resource:
        header, sep, data = url[len("data:"):].partition(",")
        if not sep:
            raise LoadError(url, "malformed data URL")
        params = header.split(";")
        mime = params[0] or "text/plain"
        try:
            if "base64" in params[1:]:
                body = base64.b64decode(data)
            else:
                body = unquote_to_bytes(data)
        except ValueError as e:
            raise LoadError(url, f"malformed data URL: {e}")
        return Resource(url=url, status=200, content_type=mime, body=body)

    @staticmethod
    async def _read_file(url: str) -> Resource:
        parsed = urlparse(url)
        path = Path(url2pathname(parsed.path) if parsed.scheme else url)
        loop = asyncio.get_running_loop()
        try:
            body = await loop.run_in_executor(None, path.read_bytes)
        except OSError as e:
            raise LoadError(url, e.strerror or str(e), code=203)
        content_type = "text/html" if path.suffix in (".html", ".htm") else "text/plain"
        return Resource(url=url, status=200, content_type=content_type, body=body)

    async def _fetch_http(self, url: str, headers: Dict[str, str], timeout: Optional[float]) -> Resource:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            async with self._session.get(
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                body = await response.read()
                return Resource(
                    url=str(response.url),
                    status=response.status,
                    content_type=response.content_type,
                    body=body,
                )
        except aiohttp.ClientError as e:
            raise LoadError(url, str(e) or type(e).__name__, code=99)

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Cookie jar helpers shared by the root object and pages


def _add_cookie(jar: List[Dict[str, Any]], cookie: Any) -> bool:
    if not isinstance(cookie, dict) or "name" not in cookie or "value" not in cookie:
        return False
    jar[:] = [c for c in jar if c.get("name") != cookie["name"]]
    jar.append(dict(cookie))
    return True


def _delete_cookie(jar: List[Dict[str, Any]], name: str) -> bool:
    before = len(jar)
    jar[:] = [c for c in jar if c.get("name") != name]
    return len(jar) != before


class _Console:
    def __init__(self, page: "Page"):
        self._page = page

    def log(self, *parts):
        self._page.triggers.fire("onConsoleMessage", " ".join(str(p) for p in parts), 0, "")

    info = warn = error = debug = log


class _Window:
    def __init__(self, page: "Page"):
        self._page = page

    def open(self, url: Optional[str] = None) -> int:
        return self._page.open_window(url)

    @property
    def location(self) -> str:
        return self._page.properties["url"]


class _Document:
    def __init__(self, page: "Page"):
        self._props = page.properties

    @property
    def title(self) -> str:
        return self._props["title"]

    @title.setter
    def title(self, value):
        self._props["title"] = str(value)

    @property
    def content(self) -> str:
        return self._props["content"]

    @property
    def url(self) -> str:
        return self._props["url"]


class RootObject(RemoteObject):
    """The worker's global surface (target ``"global"``)."""

    operations = {
        **RemoteObject.operations,
        "createPage": "create_page",
        "injectJs": "inject_js",
        "exit": "exit",
        "addCookie": "add_cookie",
        "deleteCookie": "delete_cookie",
        "clearCookies": "clear_cookies",
        "setProxy": "set_proxy",
    }

    def __init__(
        self,
        events: EventBuffer,
        registry: HandleRegistry,
        on_exit: Callable[[int], None],
        parameters: Optional[Dict[str, str]] = None,
        loader: Optional[ResourceLoader] = None,
    ):
        super().__init__(events)
        self.events = events
        self.registry = registry
        self.loader = loader or ResourceLoader()
        self._on_exit = on_exit
        self.properties.update(
            {
                "version": dict(PROTOCOL_VERSION),
                "pid": os.getpid(),
                "cookies": [],
                "cookiesEnabled": True,
                "libraryPath": os.getcwd(),
                "parameters": dict(parameters or {}),
                "proxy": None,
            }
        )
        self.scope["console"] = _RootConsole(self)
        self.on_bind(None)

    def create_page(self):
        handle = self.triggers.page_created(self.registry, Page(self))
        return {"handle": handle}

    def resolve_script_path(self, path: str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = Path(self.properties["libraryPath"]) / candidate
        return candidate

    def inject_js(self, path: str) -> bool:
        try:
            source = self.resolve_script_path(path).read_text()
            run_script(source, self.scope, filename=str(path))
        except Exception as e:
            self.report_error(e)
            return False
        return True

    def exit(self, code: int = 0):
        self._on_exit(int(code or 0))
        return True

    def add_cookie(self, cookie):
        return _add_cookie(self.properties["cookies"], cookie)

    def delete_cookie(self, name):
        return _delete_cookie(self.properties["cookies"], name)

    def clear_cookies(self):
        self.properties["cookies"].clear()
        return True

    def set_proxy(self, host, port=None, proxy_type="http", user=None, password=None):
        if not host:
            self.properties["proxy"] = None
        else:
            self.properties["proxy"] = {
                "host": host,
                "port": port,
                "type": proxy_type,
                "user": user,
                "password": password,
            }
        return True


class _RootConsole:
    def __init__(self, root: RootObject):
        self._root = root

    def log(self, *parts):
        self._root.triggers.emit("onConsoleMessage", " ".join(str(p) for p in parts))


class Page(RemoteObject):
    """A scriptable document, addressed by its handle."""

    operations = {
        **RemoteObject.operations,
        "open": "open",
        "openUrl": "open",
        "includeJs": "include_js",
        "evaluate": "evaluate",
        "evaluateJavaScript": "evaluate",
        "evaluateAsync": "evaluate_async",
        "injectJs": "inject_js",
        "setContent": "set_content",
        "reload": "reload",
        "stop": "stop",
        "goBack": "go_back",
        "goForward": "go_forward",
        "addCookie": "add_cookie",
        "deleteCookie": "delete_cookie",
        "clearCookies": "clear_cookies",
        "close": "close",
        "release": "close",
    }
    deferred_operations = frozenset({"open", "openUrl", "includeJs"})

    def __init__(self, root: RootObject):
        super().__init__(root.events)
        self.root = root
        self.closed = False
        self._history: List[str] = []
        self._history_index = -1
        self._request_seq = 0
        self._loading: Optional[asyncio.Task] = None
        self.properties.update(
            {
                "url": "about:blank",
                "title": "",
                "content": "",
                "settings": {
                    "userAgent": DEFAULT_USER_AGENT,
                    "javascriptEnabled": True,
                    "loadImages": True,
                    "resourceTimeout": None,
                },
                "viewportSize": {"width": 400, "height": 300},
                "customHeaders": {},
                "cookies": [],
            }
        )
        self.scope.update(
            {
                "console": _Console(self),
                "window": _Window(self),
                "document": _Document(self),
                "alert": self.alert,
                "confirm": self.confirm,
                "prompt": self.prompt,
                "call_phantom": self.call_phantom,
            }
        )

    # Script-facing notifications

    def alert(self, message=""):
        self.triggers.fire("onAlert", str(message))

    def confirm(self, message="") -> bool:
        return bool(self.triggers.fire("onConfirm", str(message)))

    def prompt(self, message="", default=""):
        return self.triggers.fire("onPrompt", str(message), default)

    def call_phantom(self, data=None):
        return self.triggers.fire("onCallback", data)

    def open_window(self, url: Optional[str] = None) -> int:
        child = Page(self.root)
        handle = self.triggers.page_created(self.root.registry, child)
        if url:
            child.schedule_load(url)
        return handle

    def _run(self, fn: Callable, args) -> Any:
        try:
            return fn(*args)
        except Exception as e:
            self.report_error(e)
            raise

    # Loading

    def _timeout(self) -> Optional[float]:
        value = self.properties["settings"].get("resourceTimeout")
        return value / 1000.0 if value else None

    async def _fetch(self, url: str):
        """Fetch one resource with its resource notifications; None on failure."""
        self._request_seq += 1
        request_id = self._request_seq
        headers = dict(self.properties.get("customHeaders") or {})
        headers.setdefault("User-Agent", self.properties["settings"].get("userAgent", DEFAULT_USER_AGENT))
        self.triggers.fire(
            "onResourceRequested",
            {
                "id": request_id,
                "url": url,
                "method": "GET",
                "headers": [{"name": k, "value": v} for k, v in headers.items()],
                "time": _now(),
            },
            None,
        )
        try:
            resource = await asyncio.wait_for(
                self.root.loader.fetch(url, headers=headers), timeout=self._timeout()
            )
        except asyncio.TimeoutError:
            self.triggers.fire(
                "onResourceTimeout",
                {"id": request_id, "url": url, "errorCode": 408, "errorString": "Network timeout on resource."},
            )
            return None
        except LoadError as e:
            self.triggers.fire(
                "onResourceError",
                {"id": request_id, "url": url, "errorCode": e.code, "errorString": e.reason},
            )
            return None

        self.triggers.fire(
            "onResourceReceived",
            {
                "id": request_id,
                "url": url,
                "status": resource.status,
                "contentType": resource.content_type,
                "bodySize": len(resource.body),
                "stage": "end",
                "time": _now(),
            },
        )
        return resource

    async def _load(self, url: str, record_history: bool = True) -> str:
        self.triggers.fire("onNavigationRequested", url, "Other", True, True)
        self.triggers.fire("onLoadStarted")

        resource = await self._fetch(url)
        if resource is None or resource.status >= 400:
            self.triggers.fire("onLoadFinished", "fail")
            return "fail"

        self._apply_content(resource.text, url)
        if record_history:
            del self._history[self._history_index + 1:]
            self._history.append(url)
            self._history_index = len(self._history) - 1
        self.triggers.fire("onUrlChanged", url)
        self.triggers.fire("onInitialized")
        self.triggers.fire("onLoadFinished", "success")
        return "success"

    def _apply_content(self, content: str, url: Optional[str]):
        self.properties["content"] = content
        if url is not None:
            self.properties["url"] = url
        match = _TITLE_RE.search(content)
        self.properties["title"] = html.unescape(match.group(1).strip()) if match else ""

    def schedule_load(self, url: str, record_history: bool = True):
        self.stop()
        self._loading = asyncio.ensure_future(self._load(url, record_history))

    # Operations

    async def open(self, url: str, *_options) -> str:
        return await self._load(str(url))

    async def include_js(self, url: str, *_ignored) -> bool:
        resource = await self._fetch(str(url))
        if resource is None:
            raise LoadError(str(url), "script could not be fetched")
        try:
            run_script(resource.text, self.scope, filename=str(url))
        except Exception as e:
            self.report_error(e)
            raise
        return True

    def evaluate(self, source: str, *args):
        fn = compile_callable(source, self.scope, filename="<evaluate>")
        return self._run(fn, args)

    def evaluate_async(self, source: str, delay_ms: float = 0, *args):
        fn = compile_callable(source, self.scope, filename="<evaluateAsync>")
        loop = asyncio.get_running_loop()
        loop.call_later(max(0.0, float(delay_ms or 0)) / 1000.0, self._run_detached, fn, args)
        return None

    def _run_detached(self, fn: Callable, args):
        if self.closed:
            return
        try:
            fn(*args)
        except Exception as e:
            # No caller is waiting; onError is the only report.
            self.report_error(e)

    def inject_js(self, path: str) -> bool:
        try:
            source = self.root.resolve_script_path(path).read_text()
            run_script(source, self.scope, filename=str(path))
        except Exception as e:
            self.report_error(e)
            return False
        return True

    def set_content(self, content: str, url: Optional[str] = None):
        self.triggers.fire("onLoadStarted")
        previous = self.properties["url"]
        self._apply_content(str(content), url)
        if url is not None and url != previous:
            self.triggers.fire("onUrlChanged", url)
        self.triggers.fire("onLoadFinished", "success")
        return True

    def reload(self):
        if self._history_index >= 0:
            self.schedule_load(self._history[self._history_index], record_history=False)
        return True

    def stop(self):
        if self._loading is not None and not self._loading.done():
            self._loading.cancel()
        self._loading = None
        return True

    def go_back(self) -> bool:
        if self._history_index <= 0:
            return False
        self._history_index -= 1
        self.schedule_load(self._history[self._history_index], record_history=False)
        return True

    def go_forward(self) -> bool:
        if self._history_index >= len(self._history) - 1:
            return False
        self._history_index += 1
        self.schedule_load(self._history[self._history_index], record_history=False)
        return True

    def add_cookie(self, cookie):
        return _add_cookie(self.properties["cookies"], cookie)

    def delete_cookie(self, name):
        return _delete_cookie(self.properties["cookies"], name)

    def clear_cookies(self):
        self.properties["cookies"].clear()
        return True

    def close(self):
        if self.closed:
            return True
        self.stop()
        self.triggers.fire("onClosing")
        self.closed = True
        if self.handle is not None:
            self.root.registry.release(self.handle)
        return True
