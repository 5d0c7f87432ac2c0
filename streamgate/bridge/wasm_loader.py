"""
wasmtime host for the provider's wasm-bindgen auth module.

wasm-bindgen modules expect JavaScript glue: an object heap addressed by index,
UTF-8 strings copied in and out of linear memory, closures and promises. This
module supplies that glue in Python, wiring each import to the BrowserShim.

Import names carry a per-build hash suffix (`__wbg_now_807e54c39636c349`), so
handlers are matched on the name with the hash stripped, disambiguated by arity
where the same JavaScript name is used for different signatures.
"""

import logging
import re
import struct
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import wasmtime

from ..core.errors import BridgeError
from .shim import UNDEFINED, BrowserShim, is_like_none

logger = logging.getLogger(__name__)

HEAP_RESERVED = 128
HEAP_STATIC = 132  # reserved slots plus undefined, null, true, false
CLOSURE_DTOR_INDEX = 36
MAX_MICROTASKS = 10000

_HASHED_IMPORT = re.compile(r"^(__wbg_.+?)_[0-9a-f]{16}$")

# Imports whose JavaScript glue catches exceptions and hands them to the module
CATCHING_IMPORTS = {
    "__wbg_call", "__wbg_colorDepth", "__wbg_height", "__wbg_width", "__wbg_screen",
    "__wbg_createElement", "__wbg_getContext", "__wbg_fillText", "__wbg_toDataURL",
    "__wbg_localStorage", "__wbg_getItem", "__wbg_setItem", "__wbg_platform", "__wbg_userAgent",
}


def import_base(name: str) -> str:
    """Strip the build hash from a wasm-bindgen import name."""
    match = _HASHED_IMPORT.match(name)
    if match:
        return match.group(1)
    if name.startswith("__wbindgen_closure_wrapper"):
        return "__wbindgen_closure_wrapper"
    return name


class ObjectHeap:
    """wasm-bindgen's index-addressed table of host values with a free list."""

    def __init__(self):
        self._slots: List[Any] = [UNDEFINED] * HEAP_RESERVED
        self._slots.extend([UNDEFINED, None, True, False])
        self._next = len(self._slots)

    def get(self, idx: int) -> Any:
        return self._slots[idx]

    def add(self, obj: Any) -> int:
        if self._next == len(self._slots):
            self._slots.append(len(self._slots) + 1)
        idx = self._next
        self._next = self._slots[idx]
        self._slots[idx] = obj
        return idx

    def drop(self, idx: int):
        if idx < HEAP_STATIC:
            return
        self._slots[idx] = self._next
        self._next = idx

    def take(self, idx: int) -> Any:
        value = self.get(idx)
        self.drop(idx)
        return value


class JsPromise:
    """Promise whose reactions run on an explicit microtask queue."""

    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"

    def __init__(self, queue: Deque[Callable[[], Any]]):
        self._queue = queue
        self.state = self.PENDING
        self.value: Any = UNDEFINED
        self._reactions: List[Callable[[], Any]] = []

    @classmethod
    def resolved(cls, queue, value) -> "JsPromise":
        if isinstance(value, JsPromise):
            return value
        promise = cls(queue)
        promise.resolve(value)
        return promise

    @classmethod
    def rejected(cls, queue, reason) -> "JsPromise":
        promise = cls(queue)
        promise.reject(reason)
        return promise

    def resolve(self, value: Any = UNDEFINED):
        if isinstance(value, JsPromise):
            value.then(self.resolve, self.reject)
            return
        self._settle(self.FULFILLED, value)

    def reject(self, reason: Any = UNDEFINED):
        self._settle(self.REJECTED, reason)

    def _settle(self, state: str, value: Any):
        if self.state != self.PENDING:
            return
        self.state = state
        self.value = value
        self._queue.extend(self._reactions)
        self._reactions = []

    def then(self, on_fulfilled=None, on_rejected=None) -> "JsPromise":
        child = JsPromise(self._queue)

        def reaction():
            handler = on_fulfilled if self.state == self.FULFILLED else on_rejected
            if not callable(handler):
                child._settle(self.state, self.value)
                return
            try:
                child.resolve(handler(self.value))
            except Exception as e:
                child.reject(e)

        if self.state == self.PENDING:
            self._reactions.append(reaction)
        else:
            self._queue.append(reaction)
        return child


class WasmClosure:
    """Host-side callable wrapping a closure that lives inside the module."""

    def __init__(self, module: "WasmAuthModule", a: int, b: int):
        self.module = module
        self.original = {"a": a, "b": b, "cnt": 1}

    def __call__(self, arg: Any = UNDEFINED):
        state = self.original
        state["cnt"] += 1
        a = state["a"]
        state["a"] = 0
        try:
            return self.module.call_export("__wbindgen_export_5", a, state["b"], self.module.heap.add(arg))
        finally:
            state["cnt"] -= 1
            if state["cnt"] == 0:
                self.module.destroy_closure(a, state["b"])
            else:
                state["a"] = a


class WasmAuthModule:
    """
    The provider's auth module instantiated under wasmtime.

    Args:
        source: Compiled module bytes or WAT text
        shim: Browser environment the module's imports read from
    """

    def __init__(self, source: Union[bytes, str], shim: BrowserShim):
        self.shim = shim
        self.heap = ObjectHeap()
        self.microtasks: Deque[Callable[[], Any]] = deque()
        self._vector_len = 0

        self.engine = wasmtime.Engine()
        self.store = wasmtime.Store(self.engine)
        try:
            self.module = wasmtime.Module(self.engine, source)
        except wasmtime.WasmtimeError as e:
            raise BridgeError(f"Invalid auth module: {e}") from e

        handlers = self._handlers()
        imports = []
        missing = []
        for imp in self.module.imports:
            if not isinstance(imp.type, wasmtime.FuncType):
                missing.append(f"{imp.module}.{imp.name} (non-function)")
                continue
            handler = self._lookup(handlers, imp.name, imp.type)
            if handler is None:
                missing.append(f"{imp.module}.{imp.name}")
                continue
            imports.append(wasmtime.Func(self.store, imp.type, self._adapt(imp.name, imp.type, handler)))
        if missing:
            raise BridgeError(f"Auth module needs unsupported imports: {', '.join(missing)}")

        try:
            instance = wasmtime.Instance(self.store, self.module, imports)
        except (wasmtime.WasmtimeError, wasmtime.Trap) as e:
            raise BridgeError(f"Auth module instantiation failed: {e}") from e
        self.exports = instance.exports(self.store)
        self.memory = self.exports["memory"]
        logger.info(f"Auth module instantiated with {len(imports)} imports")

    @classmethod
    def from_file(cls, path: str, shim: BrowserShim) -> "WasmAuthModule":
        try:
            with open(path, "rb") as f:
                source = f.read()
        except OSError as e:
            raise BridgeError(f"Auth module not readable at {path}: {e}") from e
        return cls(source, shim)

    # Memory and marshalling

    def call_export(self, name: str, *args):
        return self.exports[name](self.store, *args)

    def read_string(self, ptr: int, length: int) -> str:
        ptr &= 0xFFFFFFFF
        return bytes(self.memory.read(self.store, ptr, ptr + length)).decode("utf-8")

    def pass_string(self, value: str) -> int:
        data = value.encode("utf-8")
        ptr = self.call_export("__wbindgen_export_1", len(data), 1) & 0xFFFFFFFF
        self.memory.write(self.store, data, ptr)
        self._vector_len = len(data)
        return ptr

    def read_i32(self, addr: int) -> int:
        return struct.unpack("<i", bytes(self.memory.read(self.store, addr, addr + 4)))[0]

    def write_i32(self, addr: int, value: int):
        self.memory.write(self.store, struct.pack("<i", value), addr)

    def write_string_ret(self, retptr: int, value: Optional[str]):
        """Return a (ptr, len) pair through retptr; a null pointer means None."""
        if is_like_none(value):
            ptr, self._vector_len = 0, 0
        else:
            ptr = self.pass_string(str(value))
        self.write_i32(retptr + 4, self._vector_len)
        self.write_i32(retptr, ptr)

    def destroy_closure(self, a: int, b: int):
        table = self.exports["__wbindgen_export_3"]
        dtor = table.get(self.store, CLOSURE_DTOR_INDEX)
        if dtor is not None:
            dtor(self.store, a, b)

    def drain_microtasks(self):
        ran = 0
        while self.microtasks:
            if ran >= MAX_MICROTASKS:
                raise BridgeError("Auth module microtask queue did not drain")
            task = self.microtasks.popleft()
            task()
            ran += 1

    def queue_microtask(self, task: Callable[[], Any]):
        self.microtasks.append(task)

    # Import table

    @staticmethod
    def _lookup(handlers: Dict[str, Callable], name: str, functype) -> Optional[Callable]:
        base = import_base(name)
        params = len(functype.params)
        results = len(functype.results)
        return (
            handlers.get(f"{base}/{params}/{results}")
            or handlers.get(f"{base}/{params}")
            or handlers.get(base)
        )

    def _adapt(self, name: str, functype, handler: Callable) -> Callable:
        results = functype.results
        catching = import_base(name) in CATCHING_IMPORTS
        is_float = bool(results) and results[0] in (wasmtime.ValType.f64(), wasmtime.ValType.f32())

        def host(*args):
            if catching:
                try:
                    value = handler(*args)
                except Exception as e:
                    logger.debug(f"Import {name} raised {e!r}; handing to module")
                    self.call_export("__wbindgen_export_0", self.heap.add(e))
                    value = None
            else:
                value = handler(*args)
            if not results:
                return None
            if is_like_none(value):
                value = 0
            if is_float:
                return float(value)
            return int(value)

        return host

    def _handlers(self) -> Dict[str, Callable]:
        heap = self.heap
        shim = self.shim
        window = shim.window
        get, add = heap.get, heap.add
        text = self.read_string

        def new_promise(a, b):
            state = {"a": a, "b": b}
            promise = JsPromise(self.microtasks)
            try:
                t = state["a"]
                state["a"] = 0
                try:
                    self.call_export("__wbindgen_export_6", t, state["b"],
                                     add(promise.resolve), add(promise.reject))
                except Exception as e:
                    promise.reject(e)
                finally:
                    state["a"] = t
                return add(promise)
            finally:
                state["a"] = state["b"] = 0

        def cb_drop(a):
            original = heap.take(a).original
            original["cnt"] -= 1
            if original["cnt"] == 0:
                original["a"] = 0
                return 1
            return 0

        def throw(a, b):
            raise BridgeError(f"Auth module error: {text(a, b)}")

        def attr_or_default(obj, attr, default):
            value = getattr(obj, attr, None)
            return default if value is None else value

        return {
            # Calls
            "__wbg_call/2": lambda a, b: add(get(a)()),
            "__wbg_call/3": lambda a, b, c: add(get(a)(get(c))),
            "__wbg_newnoargs": lambda a, b: add(lambda *args: window),
            # Screen
            "__wbg_colorDepth": lambda a: get(a).colorDepth,
            "__wbg_height": lambda a: get(a).height,
            "__wbg_width": lambda a: get(a).width,
            "__wbg_screen": lambda a: add(attr_or_default(get(a), "screen", shim.screen)),
            # Document
            "__wbg_document": lambda a: (add(get(a).document) if getattr(get(a), "document", None) else 0),
            "__wbg_createElement": lambda a, b, c: add(get(a).createElement(text(b, c))),
            "__wbg_getElementsByTagName": lambda a, b, c: add(get(a).getElementsByTagName(text(b, c))),
            # Canvas
            "__wbg_getContext": lambda a, b, c: (lambda r: 0 if is_like_none(r) else add(r))(
                get(a).getContext(text(b, c))),
            "__wbg_fillText": lambda a, b, c, d, e: get(a).fillText(text(b, c), d, e),
            "__wbg_setfont": lambda a, b, c: setattr(get(a), "font", text(b, c)),
            "__wbg_settextBaseline": lambda a, b, c: setattr(get(a), "textBaseline", text(b, c)),
            "__wbg_setheight": lambda a, b: setattr(get(a), "height", b & 0xFFFFFFFF),
            "__wbg_setwidth": lambda a, b: setattr(get(a), "width", b & 0xFFFFFFFF),
            "__wbg_toDataURL": lambda a, b: self.write_string_ret(a, get(b).toDataURL()),
            "__wbg_instanceof_CanvasRenderingContext2d": lambda a: 1,
            "__wbg_instanceof_HtmlCanvasElement": lambda a: 1,
            "__wbg_instanceof_Window": lambda a: 1,
            # Local storage
            "__wbg_localStorage": lambda a: add(attr_or_default(get(a), "localStorage", window.localStorage)),
            "__wbg_getItem": lambda a, b, c, d: self.write_string_ret(a, get(b).getItem(text(c, d))),
            "__wbg_setItem": lambda a, b, c, d, e: get(a).setItem(text(b, c), text(d, e)),
            # Navigator
            "__wbg_navigator": lambda a: add(attr_or_default(get(a), "navigator", shim.navigator)),
            "__wbg_language": lambda a, b: self.write_string_ret(a, get(b).language),
            "__wbg_platform": lambda a, b: self.write_string_ret(a, get(b).platform),
            "__wbg_userAgent": lambda a, b: self.write_string_ret(a, get(b).userAgent),
            # Clock and randomness
            "__wbg_new0": lambda: add(shim.new_date()),
            "__wbg_getTime": lambda a: get(a).getTime(),
            "__wbg_now/0": lambda: shim.now(),
            "__wbg_now/1": lambda a: get(a).now(),
            "__wbg_getTimezoneOffset": lambda *args: shim.timezone_offset,
            "__wbg_performance": lambda a: add(attr_or_default(get(a), "performance", window.performance)),
            "__wbg_random": lambda: shim.random(),
            # Collections and promises
            "__wbg_length": lambda a: len(get(a)),
            "__wbg_new/2": new_promise,
            "__wbg_resolve": lambda a: add(JsPromise.resolved(self.microtasks, get(a))),
            "__wbg_reject": lambda a: add(JsPromise.rejected(self.microtasks, get(a))),
            "__wbg_then/2": lambda a, b: add(get(a).then(get(b))),
            "__wbg_then/3": lambda a, b, c: add(get(a).then(get(b), get(c))),
            "__wbg_queueMicrotask/1/0": lambda a: self.queue_microtask(get(a)),
            "__wbg_queueMicrotask/1/1": lambda a: add(self.queue_microtask),
            # Globals
            "__wbg_static_accessor_GLOBAL": lambda: 0,
            "__wbg_static_accessor_GLOBAL_THIS": lambda: add(window),
            "__wbg_static_accessor_SELF": lambda: add(window),
            "__wbg_static_accessor_WINDOW": lambda: add(window),
            # wasm-bindgen runtime
            "__wbindgen_cb_drop": cb_drop,
            "__wbindgen_closure_wrapper": lambda a, b, *rest: add(WasmClosure(self, a, b)),
            "__wbindgen_is_function": lambda a: callable(get(a)),
            "__wbindgen_is_undefined": lambda a: get(a) is UNDEFINED,
            "__wbindgen_object_clone_ref": lambda a: add(get(a)),
            "__wbindgen_object_drop_ref": lambda a: heap.drop(a),
            "__wbindgen_string_new": lambda a, b: add(text(a, b)),
            "__wbindgen_throw": throw,
        }

    # Exports

    def derive_key(self) -> str:
        """Run the module's key derivation and return the API key it produces."""
        retptr = self.call_export("__wbindgen_add_to_stack_pointer", -16)
        try:
            self.call_export("get_img_key", retptr)
            r0 = self.read_i32(retptr)
            r1 = self.read_i32(retptr + 4)
            r2 = self.read_i32(retptr + 8)
            r3 = self.read_i32(retptr + 12)
            if r3:
                raise BridgeError(f"Key derivation failed: {heap_repr(self.heap.take(r2))}")
            key = self.read_string(r0, r1)
            self.call_export("__wbindgen_export_4", r0, r1, 1)
            return key
        except BridgeError:
            raise
        except Exception as e:
            raise BridgeError(f"Key derivation trapped: {e}") from e
        finally:
            self.call_export("__wbindgen_add_to_stack_pointer", 16)

    def decrypt(self, payload: str, key: str) -> str:
        """Decrypt an API response body; the module's async export is settled before returning."""
        try:
            p0 = self.pass_string(payload)
            l0 = self._vector_len
            p1 = self.pass_string(key)
            l1 = self._vector_len
            promise = self.heap.take(self.call_export("process_img_data", p0, l0, p1, l1))
            self.drain_microtasks()
        except BridgeError:
            raise
        except Exception as e:
            raise BridgeError(f"Decryption trapped: {e}") from e

        if not isinstance(promise, JsPromise):
            return str(promise)
        if promise.state == JsPromise.PENDING:
            raise BridgeError("Decryption promise never settled")
        if promise.state == JsPromise.REJECTED:
            raise BridgeError(f"Decryption rejected: {heap_repr(promise.value)}")
        return str(promise.value)


def heap_repr(value: Any) -> str:
    if isinstance(value, BaseException):
        return str(value) or type(value).__name__
    return repr(value)
