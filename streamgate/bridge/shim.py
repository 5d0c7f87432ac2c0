"""
Minimal browser environment for the provider's WebAssembly auth module.

The module fingerprints its host through a canvas, local storage, navigator,
screen and clock before it will derive a key. Everything here is deterministic
for the lifetime of one shim so the derived key stays stable across calls.
"""

import base64
import random
import time
import uuid
from typing import Any, Callable, List, Optional

SESSION_STORAGE_KEY = "tmdb_session_id"
SHIM_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class Undefined:
    """JavaScript `undefined`, distinct from `null` (None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "undefined"


UNDEFINED = Undefined()


def is_like_none(value: Any) -> bool:
    return value is None or value is UNDEFINED


class CanvasContext2D:
    def __init__(self):
        self.font = "14px Arial"
        self.textBaseline = "alphabetic"

    def fillText(self, text: str, x: float, y: float):
        pass


class Canvas:
    def __init__(self, data_url: str):
        self.width = 200
        self.height = 50
        self._data_url = data_url
        self._context = CanvasContext2D()

    def getContext(self, kind: str) -> Optional[CanvasContext2D]:
        return self._context if kind == "2d" else None

    def toDataURL(self) -> str:
        return self._data_url


class Element:
    """Generic element returned for anything other than a canvas."""

    def __init__(self, tag: str):
        self.tagName = tag.upper()
        self.style = {}

    def appendChild(self, child):
        return child


class Body(Element):
    def __init__(self, width: int, height: int):
        super().__init__("body")
        self.children: List[Any] = []
        self.clientWidth = self.offsetWidth = width
        self.clientHeight = self.offsetHeight = height

    def appendChild(self, child):
        self.children.append(child)
        return child


class Document:
    def __init__(self, shim: "BrowserShim"):
        self._shim = shim
        self.body = Body(shim.screen.width, shim.screen.height)

    def createElement(self, tag: str):
        if tag.lower() == "canvas":
            return Canvas(self._shim.canvas_data_url())
        return Element(tag)

    def getElementsByTagName(self, tag: str) -> List[Any]:
        return [self.body] if tag.lower() == "body" else []


class LocalStorage:
    def __init__(self, session_id: str):
        self._session_id = session_id
        self._items = {}

    def getItem(self, key: str) -> Optional[str]:
        if key == SESSION_STORAGE_KEY:
            return self._session_id
        return self._items.get(key)

    def setItem(self, key: str, value: str):
        # The session key is pinned; writes to it are ignored
        if key != SESSION_STORAGE_KEY:
            self._items[key] = value


class Navigator:
    def __init__(self, platform: str, language: str, user_agent: str):
        self.platform = platform
        self.language = language
        self.userAgent = user_agent


class Screen:
    def __init__(self, width: int, height: int, color_depth: int):
        self.width = width
        self.height = height
        self.colorDepth = color_depth


class Performance:
    def __init__(self, origin_ms: float, clock: Callable[[], float]):
        self._origin_ms = origin_ms
        self._clock = clock

    def now(self) -> float:
        return self._clock() * 1000 - self._origin_ms


class JsDate:
    def __init__(self, epoch_ms: float, timezone_offset: int):
        self.epoch_ms = epoch_ms
        self.timezone_offset = timezone_offset

    def getTime(self) -> float:
        return self.epoch_ms

    def getTimezoneOffset(self) -> int:
        return self.timezone_offset


class Window:
    def __init__(self, shim: "BrowserShim"):
        self.document = Document(shim)
        self.localStorage = LocalStorage(shim.session_id)
        self.navigator = shim.navigator
        self.screen = shim.screen
        self.performance = Performance(shim.timestamp_ms, shim.clock)


class BrowserShim:
    """
    Emulated browser globals handed to the auth module.

    Args:
        session_id: Value returned for the module's session key in local storage
        clock_offset_ms: Server minus local clock, from the time sync request
        clock: Local time source in seconds
        random_seed: Value returned by every Math.random() call
        timezone_offset: Minutes, JavaScript sign convention (UTC minus local)
    """

    def __init__(self, session_id: Optional[str] = None, clock_offset_ms: float = 0,
                 clock: Callable[[], float] = time.time, random_seed: Optional[float] = None,
                 timezone_offset: int = 0, user_agent: str = SHIM_USER_AGENT):
        self.session_id = session_id or uuid.uuid4().hex
        self.clock = clock
        # The module sees a clock frozen slightly in the past, as a page loaded moments ago would
        self.timestamp_ms = clock() * 1000 + clock_offset_ms - 5000
        self.random_seed = random.random() if random_seed is None else random_seed
        self.timezone_offset = timezone_offset
        self.navigator = Navigator("Win32", "en-US", user_agent)
        self.screen = Screen(1920, 1080, 24)
        self.window = Window(self)

    def canvas_data_url(self) -> str:
        canvas_data = (
            f"canvas-fp-{self.screen.width}x{self.screen.height}-{self.screen.colorDepth}"
            f"-{self.navigator.platform}-{self.navigator.language}"
        )
        return "data:image/png;base64," + base64.b64encode(canvas_data.encode()).decode()

    def now(self) -> float:
        return self.timestamp_ms

    def new_date(self) -> JsDate:
        return JsDate(self.timestamp_ms, self.timezone_offset)

    def random(self) -> float:
        return self.random_seed
