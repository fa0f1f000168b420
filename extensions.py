from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1


class WSExtensionError(Exception):
    pass


@dataclass(frozen=True)
class StepContext:
    """Read-only view of the machine handed to step rules before an instruction runs."""

    step_index: int
    instruction_pointer: int
    instruction: Any  # parser.Instruction
    stack: Tuple[int, ...]
    call_stack: Tuple[int, ...]
    heap: Optional[Dict[int, int]]


StepHandler = Callable[[Any, StepContext], None]


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name, wants_heap)]
    _step_rules: List[Tuple[int, StepHandler, str, str, bool]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: StepHandler, ext_name: str, heap: bool = False) -> None:
        if every_n <= 0:
            raise WSExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name, heap))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    @property
    def wants_heap(self) -> bool:
        return any(rule[4] for rule in self._step_rules)

    def before_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name, _heap in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = "", heap: bool = False):
        if handler is None:
            def deco(fn: StepHandler) -> StepHandler:
                self._services.hook_registry.add_step_rule(
                    name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name, heap=heap
                )
                return fn
            return deco
        self._services.hook_registry.add_step_rule(
            name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name, heap=heap
        )
        return handler


# ---- built-in tracer ----


def format_step(ctx: StepContext) -> str:
    lines = [
        f"[step {ctx.step_index}] ip={ctx.instruction_pointer} {ctx.instruction}",
        f"  stack: {list(ctx.stack)}",
        f"  call stack: {list(ctx.call_stack)}",
    ]
    if ctx.heap is not None:
        if ctx.heap:
            cells = ", ".join(f"{addr}: {val}" for addr, val in ctx.heap.items())
            lines.append(f"  heap: {{{cells}}}")
        else:
            lines.append("  heap: {}")
    return "\n".join(lines)


def install_tracer(services: RuntimeServices, *, heap: bool, sink: Optional[Callable[[str], None]] = None) -> None:
    write = sink or (lambda text: print(text, file=sys.stderr))

    def _trace(_interpreter: Any, ctx: StepContext) -> None:
        write(format_step(ctx))

    services.hook_registry.add_step_rule(name="trace", every_n=1, handler=_trace, ext_name="builtin", heap=heap)


# ---- loading ----


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"spacey_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise WSExtensionError(f"Extension not found: {path}")
    mod_name = _unique_module_name(path)
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise WSExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


def build_default_services(*, debug: bool = False, debug_heap: bool = False, sink: Optional[Callable[[str], None]] = None) -> RuntimeServices:
    services = RuntimeServices()
    if debug or debug_heap:
        install_tracer(services, heap=debug_heap, sink=sink)
    return services


def load_runtime_services(paths: Sequence[str], *, debug: bool = False, debug_heap: bool = False) -> RuntimeServices:
    services = build_default_services(debug=debug, debug_heap=debug_heap)
    for path in [os.path.abspath(p) for p in paths]:
        module = load_extension_module(path)
        api_version = getattr(module, "SPACEY_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise WSExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "spacey_register", None)
        if register is None or not callable(register):
            raise WSExtensionError(f"Extension {path} must define callable spacey_register(ext)")
        ext_name = getattr(module, "SPACEY_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
        ext = ExtensionAPI(services=services, ext_name=str(ext_name))
        register(ext)
    return services
