import uuid
import logging
from typing import Union, Optional, Any
from datetime import datetime, timezone
from collections.abc import Iterator, Mapping, MutableMapping
import jsonpickle
from jsonpickle.unpickler import loadclass
from datamodel import BaseModel
from pydantic import BaseModel as PydanticBaseModel
from .vault import CredentialVault, EncryptedBundle, Ok


logger = logging.getLogger("relay.store")

SESSION_ID = "session_id"
SESSION_KEY = "identity"

# jsonpickle reads "py/..." keys as tags; user keys with this prefix are
# shifted behind the escape character before encoding.
_TAG_PREFIX = "py/"
_ESCAPE = "~"


def escape_keys(value: Any) -> Any:
    """Rewrite dict keys so none of them can be read as a jsonpickle tag."""
    if isinstance(value, dict):
        return {
            (_ESCAPE + k if isinstance(k, str) and k.startswith((_TAG_PREFIX, _ESCAPE)) else k):
                escape_keys(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [escape_keys(v) for v in value]
    if isinstance(value, tuple):
        return tuple(escape_keys(v) for v in value)
    return value


def unescape_keys(value: Any) -> Any:
    """Inverse of escape_keys."""
    if isinstance(value, dict):
        return {
            (k[1:] if isinstance(k, str) and k.startswith(_ESCAPE) else k):
                unescape_keys(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [unescape_keys(v) for v in value]
    if isinstance(value, tuple):
        return tuple(unescape_keys(v) for v in value)
    return value


class ModelHandler(jsonpickle.handlers.BaseHandler):
    """ModelHandler.
    This class can handle with serializable Data Models.
    """
    def flatten(self, obj, data):
        data['__dict__'] = self.context.flatten(escape_keys(obj.__dict__), reset=False)
        return data

    def restore(self, obj):
        module_and_type = obj['py/object']
        mdl = loadclass(module_and_type)
        cls = mdl.__new__(mdl) if hasattr(mdl, '__new__') else object.__new__(mdl)
        cls.__dict__ = unescape_keys(self.context.restore(obj['__dict__'], reset=False))
        return cls

jsonpickle.handlers.registry.register(BaseModel, ModelHandler, base=True)


class PydanticHandler(jsonpickle.handlers.BaseHandler):
    """PydanticHandler.
    Restores pydantic models through model_validate, so frozen and
    validated models come back intact.
    """
    def flatten(self, obj, data):
        data['fields'] = self.context.flatten(escape_keys(obj.model_dump()), reset=False)
        return data

    def restore(self, obj):
        mdl = loadclass(obj['py/object'])
        fields = unescape_keys(self.context.restore(obj['fields'], reset=False))
        return mdl.model_validate(fields)

jsonpickle.handlers.registry.register(PydanticBaseModel, PydanticHandler, base=True)


class SessionData(MutableMapping[str, Any]):
    """Session dict-like object.

    Serializable values are kept in ``_data`` and sealed into the vault;
    anything else lives in ``_objects`` for the life of this instance only.
    """

    _data: Union[str, Any] = {}
    _objects: dict[str, Any] = {}

    # Internal attributes that should not be stored in _data or _objects
    _internal_attrs = frozenset({
        '_data', '_objects', '_changed', '_id_', '_identity', '_new',
        '_max_age', '_created', '__created__',
    })

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        *,
        new: bool = False,
        id: Optional[str] = None,
        identity: Optional[Any] = None,
        created: Optional[int] = None,
        max_age: Optional[int] = None
    ) -> None:
        # Initialize internal storage first (before any attribute access)
        object.__setattr__(self, '_data', {})
        object.__setattr__(self, '_objects', {})
        object.__setattr__(self, '_changed', bool(new))
        self._id_ = id or uuid.uuid4().hex
        self._identity = identity or self._id_
        self._new = new or not data
        self._max_age = max_age
        now = datetime.now(timezone.utc)
        self.__created__ = now
        now = int(now.timestamp())
        age = now - created if created else 0
        if max_age is not None and age > max_age:
            logger.debug("Session %s older than max_age, discarding data", self._id_)
            data = None
            created = None
            self._new = True
        self._created = created or now
        if data:
            for key, value in data.items():
                self._set_value(key, value)
            self._changed = bool(new)

    def __repr__(self) -> str:
        return (
            f'<Relay-Session [new:{self.new}, created:{self.created}] '
            f'data={self._data!r}, objects={list(self._objects.keys())}>'
        )

    # --- Serialization helpers ---

    def _is_serializable(self, value: Any) -> bool:
        """Check if a value can be sealed and restored with jsonpickle."""
        if value is None or isinstance(value, (bool, int, float, str, bytes)):
            return True
        if isinstance(value, dict):
            return all(self._is_serializable(v) for v in value.values())
        if isinstance(value, (list, tuple, set, frozenset)):
            return all(self._is_serializable(v) for v in value)
        if isinstance(value, BaseModel):
            return True
        if isinstance(value, PydanticBaseModel):
            return True
        if isinstance(value, datetime):
            return True
        # Class instances, functions, etc. are kept in-memory only
        return False

    def _get_value(self, key: str) -> Any:
        if key in self._objects:
            return self._objects[key]
        if key in self._data:
            return self._data[key]
        raise KeyError(key)

    def _set_value(self, key: str, value: Any) -> None:
        if self._is_serializable(value):
            self._objects.pop(key, None)
            self._data[key] = value
            self._changed = True
        else:
            # _objects changes don't set _changed since they're never sealed
            self._data.pop(key, None)
            self._objects[key] = value

    def _del_value(self, key: str) -> None:
        deleted = False
        if key in self._objects:
            del self._objects[key]
            deleted = True
        if key in self._data:
            del self._data[key]
            self._changed = True
            deleted = True
        if not deleted:
            raise KeyError(key)

    # --- Properties ---

    @property
    def new(self) -> bool:
        return self._new

    @property
    def logon_time(self) -> datetime:
        return self.__created__

    @property
    def session_id(self) -> str:
        return self._id_

    @property
    def identity(self) -> Optional[Any]:  # type: ignore[misc]
        return self._identity

    @property
    def created(self) -> int:
        return self._created

    @property
    def empty(self) -> bool:
        return not bool(self._data) and not bool(self._objects)

    @property
    def max_age(self) -> Optional[int]:
        return self._max_age

    @max_age.setter
    def max_age(self, value: Optional[int]) -> None:
        self._max_age = value

    @property
    def is_changed(self) -> bool:
        return self._changed

    @is_changed.setter
    def is_changed(self, value: bool) -> None:
        self._changed = value

    def session_data(self) -> dict:
        """Return only serializable data (what gets sealed)."""
        return self._data

    def session_objects(self) -> dict:
        """Return in-memory objects (never sealed)."""
        return self._objects

    def invalidate(self) -> None:
        """Clear all session data and in-memory objects."""
        self._changed = True
        self._data = {}
        self._objects = {}

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data) + len(self._objects)

    def __iter__(self) -> Iterator[str]:
        yield from self._data
        for key in self._objects:
            if key not in self._data:
                yield key

    def __contains__(self, key: object) -> bool:
        return key in self._objects or key in self._data

    def __getitem__(self, key: str) -> Any:
        return self._get_value(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self._set_value(key, value)

    def __delitem__(self, key: str) -> None:
        self._del_value(key)

    def __getattr__(self, key: str) -> Any:
        if key.startswith('_'):
            raise AttributeError(key)
        try:
            return self._get_value(key)
        except KeyError:
            raise AttributeError(key) from None

    def __setattr__(self, key: str, value: Any) -> None:
        if key in self._internal_attrs or key.startswith('_'):
            object.__setattr__(self, key, value)
        else:
            self._set_value(key, value)

    def encode(self, obj: Any) -> str:
        """encode

            Encode an object using jsonpickle, escaping "py/" dict keys.
        Args:
            obj (Any): Object to be encoded using jsonpickle

        Raises:
            RuntimeError: Error converting data to json.

        Returns:
            str: json version of the data
        """
        try:
            return jsonpickle.encode(escape_keys(obj))
        except Exception as err:
            raise RuntimeError(err) from err

    # --- Vault ---

    def seal(self, vault: CredentialVault) -> EncryptedBundle:
        """Encrypt the serializable part of the session.

        In-memory objects are never sealed. Clears the changed flag.
        """
        record = {
            SESSION_ID: self._id_,
            SESSION_KEY: self._identity,
            'created': self._created,
            'data': self._data,
        }
        bundle = vault.encrypt(self.encode(record))
        self._changed = False
        return bundle

    @classmethod
    def unseal(
        cls,
        bundle: Union[EncryptedBundle, Mapping[str, Any]],
        vault: CredentialVault,
        max_age: Optional[int] = None
    ) -> Optional["SessionData"]:
        """Open a sealed session.

        Returns:
            SessionData, or None when the bundle cannot be decrypted or
            decoded. A session older than ``max_age`` comes back empty.
        """
        result = vault.decrypt(bundle)
        if not isinstance(result, Ok):
            return None
        try:
            record = unescape_keys(jsonpickle.decode(result.plaintext))
        except Exception:
            logger.debug("Sealed session could not be decoded")
            return None
        if not isinstance(record, dict) or SESSION_ID not in record:
            return None
        return cls(
            data=record.get('data') or {},
            id=record[SESSION_ID],
            identity=record.get(SESSION_KEY),
            created=record.get('created'),
            max_age=max_age,
        )
