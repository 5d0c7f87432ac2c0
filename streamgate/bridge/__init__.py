"""Authentication bridge for the movie/TV extraction API

This package runs the provider's WebAssembly auth module in-process:
- Emulated browser globals the module fingerprints (shim)
- wasm-bindgen glue on top of wasmtime (wasm_loader)
- Signed request headers (signer)
- Lazy initialization and reset on repeated failures (auth_bridge)
"""

from .auth_bridge import AuthBridge, BridgeState
from .shim import BrowserShim
from .signer import RequestSigner
from .wasm_loader import WasmAuthModule

__all__ = ["AuthBridge", "BridgeState", "BrowserShim", "RequestSigner", "WasmAuthModule"]
