import inspect
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Literal, Optional, Union, get_args, get_origin, get_type_hints


class CONFIG_PARAM:
    """Placeholder default that resolves, at call time, to the attribute of the same name in a config."""

    def __init__(
            self,
            validator: Optional[Callable] = None,
            transform: Optional[Callable] = None,
            doc: Optional[str] = None,
            config: Optional[Any] = None
    ):
        self.validator = validator
        self.transform = transform
        self.doc = doc
        self._config = config
        self._name = None

    def bind(self, config: Any, name: str):
        if self._config is None:
            self._config = config
        self._name = name
        if self.doc is None and hasattr(self._config, 'PARAM_DOCS'):
            self.doc = self._config.PARAM_DOCS.get(name)

    def coerce(self, value: Any, expected_type: Any) -> Any:
        """Enum conversion, then transform, then validation of a user-provided value."""
        value = _to_enum(value, expected_type)
        if self.transform is not None:
            value = self.transform(value)
        if self.validator is not None and not self.validator(value):
            raise ValueError(f"Validation failed for parameter {self._name}: {value!r}")
        return value

    def __call__(self) -> Any:
        return self.get()

    def get(self):
        if self._config is None or self._name is None:
            raise RuntimeError("CONFIG_PARAM not bound to a config")
        return getattr(self._config, self._name)

    @property
    def value(self):
        return self.get()


def _enum_type(expected_type: Any):
    if inspect.isclass(expected_type) and issubclass(expected_type, Enum):
        return expected_type
    if get_origin(expected_type) is Union:
        for arg in get_args(expected_type):
            if inspect.isclass(arg) and issubclass(arg, Enum):
                return arg
    return None


def _to_enum(value: Any, expected_type: Any) -> Any:
    enum_type = _enum_type(expected_type)
    if enum_type is None or not isinstance(value, str):
        return value
    for member in enum_type:
        if member.value == value or member.name == value or str(member.value).lower() == value.lower():
            return member
    raise ValueError(f"'{value}' is not a valid {enum_type.__name__}")


def _check_type_match(expected_type: Any, actual_value: Any) -> bool:
    """Type check supporting Optional/Union, Literal, enums and sequences (lists and tuples are equivalent)."""
    if expected_type is None or expected_type is Any:
        return True
    origin = get_origin(expected_type)
    if actual_value is None:
        return origin is Union and type(None) in get_args(expected_type)
    if inspect.isclass(expected_type) and issubclass(expected_type, Enum):
        if isinstance(actual_value, expected_type):
            return True
        try:
            _to_enum(actual_value, expected_type)
        except ValueError:
            return False
        return isinstance(actual_value, str)
    if origin is None:
        if expected_type is float and isinstance(actual_value, int) and not isinstance(actual_value, bool):
            return True
        return isinstance(actual_value, expected_type)
    if origin is Literal:
        return getattr(actual_value, "value", actual_value) in get_args(expected_type) or \
            actual_value in get_args(expected_type)
    if origin is Union:
        return any(_check_type_match(arg, actual_value) for arg in get_args(expected_type))
    if origin in (list, tuple):
        if not isinstance(actual_value, (list, tuple)):
            return False
        args = get_args(expected_type)
        if not args:
            return True
        if origin is list or (len(args) == 2 and args[1] is Ellipsis):
            return all(_check_type_match(args[0], item) for item in actual_value)
        return len(args) == len(actual_value) and \
            all(_check_type_match(a, v) for a, v in zip(args, actual_value))
    return isinstance(actual_value, origin)


def inject_docs_from_config_params(func):
    """
    Fill the ``{param}`` placeholders of a docstring with the PARAM_DOCS entries of the configs.
    Must be applied on top of :func:`inject_defaults_from_config`.
    """
    if not hasattr(func, '_argname_to_configname') or not func.__doc__:
        return func

    docs = {}
    config = getattr(func, '_inject_default_config', None)
    param_docs = getattr(config, 'PARAM_DOCS', {})
    for name in inspect.signature(func).parameters:
        config_param = func._argname_to_configname.get(name)
        if config_param is not None and config_param.doc:
            docs[name] = config_param.doc
        elif name in param_docs:
            docs[name] = param_docs[name]
    try:
        func.__doc__ = func.__doc__.format(**docs)
    except (KeyError, IndexError):
        pass  # Undocumented placeholders are left as they are
    return func


def inject_defaults_from_config(default_config: Any, update_config_with_args: bool = False):
    """

    :param default_config: The config the CONFIG_PARAM defaults are read from. A parameter can use another
                           config with CONFIG_PARAM(config=otherConfig)
    :param update_config_with_args: If true, the config is updated with the values explicitly passed by the caller
    :return:
    """
    def decorator(func):
        sig = inspect.signature(func)
        hints = get_type_hints(func)
        config_params: Dict[str, CONFIG_PARAM] = {}

        for name, param in sig.parameters.items():
            if not isinstance(param.default, CONFIG_PARAM):
                continue
            config_param = param.default
            config_param.bind(default_config, name)
            if not hasattr(config_param._config, name):
                raise ValueError(f"Config missing parameter: {name}")
            config_value = config_param.get()
            if not _check_type_match(hints.get(name), config_value):
                raise TypeError(
                    f"Type mismatch for {name}: expected {hints.get(name)}, "
                    f"got {type(config_value)} with value {config_value}"
                )
            config_params[name] = config_param

        @wraps(func)
        def wrapper(*args, **kwargs):
            bound = sig.bind(*args, **kwargs)
            for name, config_param in config_params.items():
                if name in bound.arguments:
                    value = config_param.coerce(bound.arguments[name], hints.get(name))
                    bound.arguments[name] = value
                    if update_config_with_args:
                        setattr(config_param._config, name, value)
                else:
                    bound.arguments[name] = config_param()
            bound.apply_defaults()
            return func(*bound.args, **bound.kwargs)

        wrapper.__signature__ = sig.replace(parameters=[
            p.replace(default=config_params[p.name]()) if p.name in config_params else p
            for p in sig.parameters.values()
        ])
        wrapper._argname_to_configname = config_params
        wrapper._inject_default_config = default_config
        return wrapper

    return decorator
