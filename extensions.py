"""Extension loading and the hooks extensions attach to.

An extension is a Python file defining ``bf_lang_register(ext)``. It may
subscribe to interpreter events, run a handler every N executed steps or
on every instruction of a given kind, and contribute prelude text whose
declarations are available to every program the interpreter runs.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from lexer import BFParseError, Lexer


EXTENSION_API_VERSION = 1

POINTER_FILE_SUFFIX = ".bfx"

EVENTS = frozenset(
    {
        "program_parsed",
        "program_start",
        "before_instruction",
        "after_instruction",
        "on_error",
        "program_end",
    }
)

DECLARATION_TOKENS = frozenset({"MACRO", "PROCEDURE", "FUNCTION", "EOF"})


class BFExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    kind: str
    location: Any  # SourceLocation | None
    pointer: int
    cell: int


StepHandler = Callable[[Any, StepContext], None]


@dataclass(frozen=True)
class Hook:
    priority: int
    handler: Callable[..., None]
    ext_name: str


@dataclass(frozen=True)
class StepRule:
    name: str
    handler: StepHandler
    ext_name: str
    every_n: int = 1
    # None matches every instruction kind.
    kinds: Optional[FrozenSet[str]] = None

    def matches(self, ctx: StepContext) -> bool:
        if self.kinds is not None and ctx.kind not in self.kinds:
            return False
        return ctx.step_index % self.every_n == 0


@dataclass(frozen=True)
class Prelude:
    name: str
    text: str


@dataclass
class HookRegistry:
    _events: Dict[str, List[Hook]] = field(default_factory=dict)
    _step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise BFExtensionError(f"Unknown event '{event}' (known: {', '.join(sorted(EVENTS))})")
        hooks = self._events.setdefault(event, [])
        hooks.append(Hook(priority=priority, handler=handler, ext_name=ext_name))
        # Stable: equal priorities keep registration order.
        hooks.sort(key=lambda hook: hook.priority, reverse=True)

    def handlers(self, event: str) -> List[Hook]:
        return list(self._events.get(event, []))

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for hook in self._events.get(event, []):
            hook.handler(*args, **kwargs)

    def add_step_rule(
        self,
        *,
        name: str,
        handler: StepHandler,
        ext_name: str,
        every_n: int = 1,
        kinds: Optional[Iterable[str]] = None,
    ) -> None:
        if every_n <= 0:
            raise BFExtensionError("every_n_steps must be >= 1")
        self._step_rules.append(
            StepRule(
                name=name,
                handler=handler,
                ext_name=ext_name,
                every_n=every_n,
                kinds=frozenset(kinds) if kinds is not None else None,
            )
        )

    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self._step_rules:
            if rule.matches(ctx):
                rule.handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    preludes: List[Prelude] = field(default_factory=list)


class ExtensionAPI:
    """Handle passed to ``bf_lang_register``; records under one extension name."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        return self._step_rule(handler, name=name, every_n=every_n, kinds=None)

    def on_instruction(self, *kinds: str, handler: Optional[StepHandler] = None, name: str = ""):
        """Run ``handler`` after every executed instruction of one of ``kinds``."""
        if not kinds:
            raise BFExtensionError("on_instruction needs at least one instruction kind")
        return self._step_rule(handler, name=name, every_n=1, kinds=kinds)

    def prelude(self, text: str) -> None:
        """Make the declarations in ``text`` available to every program."""
        try:
            tokens = Lexer(text, f"<prelude:{self._ext_name}>").tokenize()
        except BFParseError as exc:
            raise BFExtensionError(f"Prelude of {self._ext_name} does not lex: {exc}")
        for token in tokens:
            if token.type not in DECLARATION_TOKENS:
                raise BFExtensionError(
                    f"Prelude of {self._ext_name} may only declare; found '{token.value}' on line {token.line}"
                )
        self._services.preludes.append(Prelude(name=self._ext_name, text=text))

    def _step_rule(self, handler: Optional[StepHandler], *, name: str, every_n: int, kinds: Optional[Iterable[str]]):
        def register(fn: StepHandler) -> StepHandler:
            self._services.hook_registry.add_step_rule(
                name=name or fn.__name__,
                handler=fn,
                ext_name=self._ext_name,
                every_n=every_n,
                kinds=kinds,
            )
            return fn

        if handler is None:
            return register
        return register(handler)


def _unique_module_name(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in stem)
    return f"bf_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.isfile(path):
        raise BFExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_unique_module_name(path), path)
    if spec is None or spec.loader is None:
        raise BFExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Extensions may import helpers that sit next to them.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)  # type: ignore[union-attr]
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def read_pointer_file(pointer_file: str) -> List[str]:
    """Extension paths listed one per line, relative to the pointer file."""
    if not os.path.isfile(pointer_file):
        raise BFExtensionError(f"{POINTER_FILE_SUFFIX} file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    paths: List[str] = []
    with open(pointer_file, "r", encoding="utf-8") as handle:
        for raw in handle:
            entry = raw.split("#", 1)[0].strip()
            if not entry:
                continue
            paths.append(entry if os.path.isabs(entry) else os.path.join(base_dir, entry))
    return paths


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for path in paths:
        if path.lower().endswith(POINTER_FILE_SUFFIX):
            expanded.extend(read_pointer_file(path))
        else:
            expanded.append(path)
    return [os.path.abspath(path) for path in expanded]


def _register_module(services: RuntimeServices, path: str, module: Any) -> None:
    api_version = getattr(module, "BF_LANG_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise BFExtensionError(
            f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "bf_lang_register", None)
    if not callable(register):
        raise BFExtensionError(f"Extension {path} must define callable bf_lang_register(ext)")
    ext_name = getattr(module, "BF_LANG_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
    register(ExtensionAPI(services=services, ext_name=str(ext_name)))


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = RuntimeServices()
    for path in gather_extension_paths(paths):
        _register_module(services, path, load_extension_module(path))
    return services
