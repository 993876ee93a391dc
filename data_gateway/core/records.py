# data_gateway/core/records.py
from typing import Any, Dict, List, Optional

from data_gateway.core.exceptions import RecordReadOnlyError


def is_child_collection(value: Any) -> bool:
    """A list whose items are all JSON objects is a child collection; an empty list counts too."""
    return isinstance(value, list) and all(isinstance(item, dict) for item in value)


class Record:
    """
    Type-erased representation of one input object.

    Holds the record type name, an ordered mapping of field name to value and
    zero or more named child collections, each a list of Records.
    Nothing is validated here; permissions and schema are checked by the gateway.
    """

    def __init__(
        self,
        type_name: str,
        fields: Optional[Dict[str, Any]] = None,
        child_collections: Optional[Dict[str, List["Record"]]] = None,
    ):
        self._type_name = type_name
        self._fields: Dict[str, Any] = dict(fields or {})
        self._children: Dict[str, List[Record]] = {
            name: list(children) for name, children in (child_collections or {}).items()
        }
        self._errors: List[str] = []
        self._read_only = False
        self.id: Optional[str] = None

    @classmethod
    def from_payload(
        cls, type_name: str, payload: Dict[str, Any], child_types: Optional[Dict[str, str]] = None
    ) -> "Record":
        """
        Builds a Record from a decoded parent payload.
        child_types maps relationship name to child record type; children of an
        unknown relationship get an empty type name.
        """
        fields: Dict[str, Any] = {}
        children: Dict[str, List[Record]] = {}
        for key, value in payload.items():
            if is_child_collection(value):
                child_type = (child_types or {}).get(key, "")
                children[key] = [cls(child_type, child) for child in value]
            else:
                fields[key] = value
        return cls(type_name, fields, children)

    @property
    def type_name(self) -> str:
        return self._type_name

    @property
    def fields(self) -> Dict[str, Any]:
        """A copy of the field mapping, in insertion order."""
        return dict(self._fields)

    @property
    def field_names(self) -> List[str]:
        return list(self._fields)

    @property
    def errors(self) -> List[str]:
        return list(self._errors)

    @property
    def has_errors(self) -> bool:
        return bool(self._errors)

    @property
    def read_only(self) -> bool:
        return self._read_only

    def get_field(self, name: str, default: Any = None) -> Any:
        return self._fields.get(name, default)

    def set_field(self, name: str, value: Any) -> None:
        if self._read_only:
            raise RecordReadOnlyError(f"{self._type_name} record is read-only; cannot set field '{name}'.")
        self._fields[name] = value

    def list_child_collections(self) -> List[str]:
        return list(self._children)

    def get_children(self, relationship_name: str) -> List["Record"]:
        return self._children.get(relationship_name, [])

    def add_error(self, message: str) -> None:
        """Flags this record as failed; the gateway will not persist it."""
        self._errors.append(message)

    def freeze(self) -> None:
        self._read_only = True
        for children in self._children.values():
            for child in children:
                child.freeze()

    def __repr__(self) -> str:
        return f"Record(type_name={self._type_name!r}, id={self.id!r}, fields={self._fields!r})"
