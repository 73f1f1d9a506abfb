# caseflow/core/codec/serde.py
from __future__ import annotations
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Type,
    Union,
    Mapping,
    Sequence,
    cast,
)
import datetime as dt
import json
import traceback as tb
from enum import Enum
from pydantic import BaseModel
import dataclasses
from importlib import import_module
from caseflow.core.logging import get_logger

logger = get_logger('serde')


Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be serialized to JSON or rehydrated from it.
    """

    pass


def exception_to_json(ex: BaseException) -> Dict[str, Json]:
    """
    Convert a BaseException to a JSON-serializable dictionary.

    Used when an exception has to be stored on a record or command.

    Returns:
        A dict with following key-value pairs:
        - "type": str
        - "message": str
        - "traceback": str
    """
    return {
        'type': type(ex).__name__,
        'message': str(ex),
        'traceback': ''.join(tb.format_exception(type(ex), ex, ex.__traceback__)),
    }


_CLASS_CACHE: Dict[
    str, Type[BaseModel]
] = {}  # cache of resolved Pydantic classes by module name and qualname

_DATACLASS_CACHE: Dict[
    str, type
] = {}  # cache of resolved dataclass types by module name and qualname


def clear_serde_caches() -> None:
    """Clear module-level rehydration caches."""
    _CLASS_CACHE.clear()
    _DATACLASS_CACHE.clear()


def _qualified_class_path(cls: type) -> tuple[str, str]:
    """
    Get the module and qualname for a class, with validation for importability.

    Raises SerializationError if another process could not import the class:
    - Defined in __main__ (entrypoint script)
    - Defined inside a function (local class with <locals> in qualname)
    """
    module_name = cls.__module__
    qualname = cls.__qualname__

    if module_name in ('__main__', '__mp_main__'):
        raise SerializationError(
            f"Cannot serialize '{qualname}' because it is defined in '__main__'. "
            'Move this class to a separate module so other hosts can import it.'
        )

    if '<locals>' in qualname:
        raise SerializationError(
            f"Cannot serialize '{qualname}' because it is a local class defined inside a function. "
            'Move this class to module level so other hosts can import it.'
        )

    return (module_name, qualname)


def _resolve_class(module_name: str, qualname: str) -> Any:
    try:
        module = import_module(module_name)
    except ImportError as e:
        raise SerializationError(
            f"Could not import module '{module_name}'. "
            f'Did you move the file without leaving a re-export shim? Error: {e}'
        )
    resolved: Any = module
    # Handle nested classes (e.g. ClassA.ClassB)
    for part in qualname.split('.'):
        resolved = getattr(resolved, part)
    return resolved


def to_jsonable(value: Any) -> Json:
    """
    Convert value to JSON with type metadata for dataclasses and Pydantic models.

    str-based enums serialize as their value; the owning dataclass coerces
    them back in ``__post_init__``.
    """
    if isinstance(value, Enum):
        return cast(Json, value.value)

    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    # datetime.datetime is a subclass of datetime.date; check datetime first.
    if isinstance(value, dt.datetime):
        return {'__datetime__': True, 'value': value.isoformat()}

    if isinstance(value, dt.date):
        return {'__date__': True, 'value': value.isoformat()}

    if isinstance(value, dt.time):
        return {'__time__': True, 'value': value.isoformat()}

    if isinstance(value, BaseModel):
        module, qualname = _qualified_class_path(type(value))
        return {
            '__pydantic_model__': True,
            'module': module,
            'qualname': qualname,
            'data': value.model_dump(mode='json'),
        }

    # Field-by-field conversion instead of asdict() to preserve nested type metadata
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        module, qualname = _qualified_class_path(type(value))
        field_data: Dict[str, Json] = {}
        for field in dataclasses.fields(value):
            field_data[field.name] = to_jsonable(getattr(value, field.name))
        return {
            '__dataclass__': True,
            'module': module,
            'qualname': qualname,
            'data': field_data,
        }

    if isinstance(value, Mapping):
        mapping = cast(Mapping[object, object], value)
        return {str(key): to_jsonable(item) for key, item in mapping.items()}

    if isinstance(value, (set, frozenset)):
        return [to_jsonable(item) for item in cast(set[object], value)]

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        seq = cast(Sequence[object], value)
        return [to_jsonable(item) for item in seq]

    raise SerializationError(f'Cannot serialize value of type {type(value).__name__}')


def dumps_json(value: Any) -> str:
    """Serialize a value to a compact JSON string."""
    return json.dumps(
        to_jsonable(value),
        ensure_ascii=False,
        separators=(',', ':'),
        allow_nan=False,
    )


def loads_json(s: Optional[str]) -> Json:
    """Deserialize a JSON string to a JSON value."""
    return json.loads(s) if s else None


def rehydrate_value(value: Json) -> Any:
    """
    Recursively rehydrate a JSON value, restoring dataclasses, Pydantic models
    and datetimes from their tagged form.

    Raises:
        SerializationError: If a tagged class cannot be resolved or constructed.
    """
    if isinstance(value, dict) and value.get('__pydantic_model__'):
        module_name = cast(str, value.get('module'))
        qualname = cast(str, value.get('qualname'))
        cache_key = f'{module_name}:{qualname}'
        try:
            if cache_key in _CLASS_CACHE:
                cls = _CLASS_CACHE[cache_key]
            else:
                cls = _resolve_class(module_name, qualname)
                if not (isinstance(cls, type) and issubclass(cls, BaseModel)):
                    raise SerializationError(f'{cache_key} is not a BaseModel')
                _CLASS_CACHE[cache_key] = cls
            return cls.model_validate(value.get('data'))
        except SerializationError:
            raise
        except Exception as e:
            logger.error(
                f'Failed to rehydrate Pydantic model {cache_key}: {type(e).__name__}: {e}'
            )
            raise SerializationError(f'Failed to rehydrate {cache_key}: {str(e)}')

    if isinstance(value, dict) and value.get('__dataclass__'):
        module_name = cast(str, value.get('module'))
        qualname = cast(str, value.get('qualname'))
        data = value.get('data')
        cache_key = f'{module_name}:{qualname}'

        try:
            if cache_key in _DATACLASS_CACHE:
                dc_cls = _DATACLASS_CACHE[cache_key]
            else:
                resolved = _resolve_class(module_name, qualname)
                if not isinstance(resolved, type) or not dataclasses.is_dataclass(
                    resolved
                ):
                    raise SerializationError(f'{cache_key} is not a dataclass')
                dc_cls = resolved
                _DATACLASS_CACHE[cache_key] = dc_cls

            if not isinstance(data, dict):
                raise SerializationError(
                    f'Dataclass data must be a dict, got {type(data)}'
                )

            rehydrated_data = {k: rehydrate_value(v) for k, v in data.items()}

            dc_fields = {f.name: f for f in dataclasses.fields(dc_cls)}
            init_kwargs: Dict[str, Any] = {}
            non_init_fields: Dict[str, Any] = {}
            for field_name, field_value in rehydrated_data.items():
                field_def = dc_fields.get(field_name)
                if field_def is None:
                    # Field removed since the document was written
                    continue
                if field_def.init:
                    init_kwargs[field_name] = field_value
                else:
                    non_init_fields[field_name] = field_value

            instance = dc_cls(**init_kwargs)
            for fname, fvalue in non_init_fields.items():
                object.__setattr__(instance, fname, fvalue)
            return instance

        except SerializationError:
            raise
        except Exception as e:
            logger.error(
                f'Failed to rehydrate dataclass {cache_key}: {type(e).__name__}: {e}'
            )
            raise SerializationError(
                f'Failed to rehydrate dataclass {cache_key}: {str(e)}'
            )

    if isinstance(value, dict) and value.get('__datetime__'):
        return dt.datetime.fromisoformat(cast(str, value['value']))

    if isinstance(value, dict) and value.get('__date__'):
        return dt.date.fromisoformat(cast(str, value['value']))

    if isinstance(value, dict) and value.get('__time__'):
        return dt.time.fromisoformat(cast(str, value['value']))

    if isinstance(value, dict):
        return {k: rehydrate_value(v) for k, v in value.items()}

    if isinstance(value, list):
        return [rehydrate_value(item) for item in value]

    return value


def document_to_object(j: Json) -> Any:
    """Rehydrate a stored document; it must be a tagged dataclass."""
    if not isinstance(j, dict) or not j.get('__dataclass__'):
        raise SerializationError('Stored document is not a tagged dataclass')
    return rehydrate_value(j)
