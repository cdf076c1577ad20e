"""Service registration: discovers callable methods on a receiver object."""

from __future__ import annotations

import dataclasses
import inspect
import logging
import threading
import typing
from collections.abc import Mapping
from typing import Any, Callable

logger = logging.getLogger(__name__)

__all__ = ["MethodType", "Service"]

_BUILTIN_ZEROS: dict[type, Callable[[], Any]] = {
    bool: bool,
    int: int,
    float: float,
    complex: complex,
    str: str,
    bytes: bytes,
    bytearray: bytearray,
    list: list,
    dict: dict,
    tuple: tuple,
    set: set,
    frozenset: frozenset,
}

_BUILTIN_NAMES: dict[str, Any] = {
    t.__name__: t
    for t in (
        bool,
        int,
        float,
        complex,
        str,
        bytes,
        bytearray,
        list,
        dict,
        tuple,
        set,
        frozenset,
        object,
        type,
        memoryview,
        range,
    )
}
_UNSUPPORTED_FLAGS = inspect.CO_VARARGS | inspect.CO_VARKEYWORDS


def _is_exported(name: str) -> bool:
    return name[:1].isupper()


def _resolve(annotation: Any, namespace: Mapping[str, Any]) -> Any:
    """Turn an annotation written as text into the object it names."""
    if not isinstance(annotation, str):
        return annotation
    name = annotation.strip().split("[", 1)[0].strip()
    if name == "None":
        return type(None)
    head, *rest = name.split(".")
    if head in namespace:
        value = namespace[head]
    elif head in _BUILTIN_NAMES:
        value = _BUILTIN_NAMES[head]
    else:
        raise NameError(f"cannot resolve annotation {annotation!r}")
    for part in rest:
        try:
            value = getattr(value, part)
        except AttributeError as exc:
            raise NameError(f"cannot resolve annotation {annotation!r}") from exc
    return value


def _field_types(cls: type) -> dict[str, Any]:
    module = inspect.getmodule(cls)
    namespace = vars(module) if module is not None else {}
    types: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        try:
            types[f.name] = _resolve(f.type, namespace)
        except NameError:
            types[f.name] = Any
    return types


def _base_type(t: Any) -> Any:
    return typing.get_origin(t) or t


def _is_exported_or_builtin(t: Any) -> bool:
    base = _base_type(t)
    if base is None or base is type(None):
        return True
    if getattr(base, "__module__", None) == "builtins":
        return True
    return _is_exported(getattr(base, "__name__", "") or "")


def _zero_value(t: Any) -> Any:
    base = _base_type(t)
    if base in _BUILTIN_ZEROS:
        return _BUILTIN_ZEROS[base]()
    if isinstance(base, type) and dataclasses.is_dataclass(base):
        hints = _field_types(base)
        kwargs = {
            f.name: _zero_value(hints.get(f.name, Any))
            for f in dataclasses.fields(base)
            if f.init
            and f.default is dataclasses.MISSING
            and f.default_factory is dataclasses.MISSING
        }
        return base(**kwargs)
    if isinstance(base, type) and base is not type(None):
        try:
            return base()
        except TypeError:
            return None
    return None


def _coerce(value: Any, t: Any) -> Any:
    base = _base_type(t)
    if not isinstance(base, type):
        return value
    if dataclasses.is_dataclass(base) and isinstance(value, Mapping):
        hints = _field_types(base)
        names = {f.name for f in dataclasses.fields(base) if f.init}
        return base(**{k: _coerce(v, hints.get(k, Any)) for k, v in value.items() if k in names})
    if base is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if base is tuple and isinstance(value, list):
        return tuple(value)
    if base is bytes and isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


@dataclasses.dataclass(eq=False)
class MethodType:
    """A callable method of a service, with its argument and reply types."""

    name: str
    func: Callable[[Any], Any]
    arg_type: Any
    reply_type: Any
    _num_calls: int = dataclasses.field(default=0, init=False, repr=False)
    _lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False
    )

    @property
    def num_calls(self) -> int:
        """How many times the method has been called."""
        with self._lock:
            return self._num_calls

    def _count_call(self) -> None:
        with self._lock:
            self._num_calls += 1

    def new_argv(self) -> Any:
        """Return the zero value of the argument type."""
        return _zero_value(self.arg_type)

    def new_replyv(self) -> Any:
        """Return the zero value of the reply type."""
        return _zero_value(self.reply_type)


def _method_types(bound: Any) -> tuple[Any, Any] | None:
    """Return the argument and reply types of a one-argument bound method, if it has them."""
    func = bound.__func__
    code = getattr(func, "__code__", None)
    if code is None:
        return None
    if code.co_flags & _UNSUPPORTED_FLAGS or code.co_kwonlyargcount:
        return None
    if code.co_argcount != 2:
        return None
    param = code.co_varnames[1]
    annotations = getattr(func, "__annotations__", None) or {}
    if param not in annotations or "return" not in annotations:
        return None
    namespace = getattr(func, "__globals__", None) or {}
    try:
        return (
            _resolve(annotations[param], namespace),
            _resolve(annotations["return"], namespace),
        )
    except NameError:
        return None


class Service:
    """A receiver object whose exported one-argument methods can be called remotely."""

    def __init__(self, receiver: Any) -> None:
        self.receiver = receiver
        self.name = type(receiver).__name__
        if not _is_exported(self.name):
            raise ValueError(f"rpc server: {self.name} is not a valid service name")
        self.methods: dict[str, MethodType] = self._register_methods()

    def _register_methods(self) -> dict[str, MethodType]:
        methods: dict[str, MethodType] = {}
        class_names = set(dir(type(self.receiver)))
        for attr, bound in inspect.getmembers(self.receiver, inspect.ismethod):
            if attr not in class_names or not _is_exported(attr):
                continue
            types = _method_types(bound)
            if types is None:
                continue
            arg_type, reply_type = types
            if not _is_exported_or_builtin(arg_type) or not _is_exported_or_builtin(reply_type):
                continue
            methods[attr] = MethodType(attr, bound, arg_type, reply_type)
            logger.info("rpc server: register %s.%s", self.name, attr)
        return methods

    def call(self, method: MethodType, argv: Any) -> Any:
        """Call ``method`` with ``argv`` converted to its argument type and return the reply."""
        method._count_call()
        return method.func(_coerce(argv, method.arg_type))