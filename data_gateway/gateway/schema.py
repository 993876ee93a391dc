# data_gateway/gateway/schema.py
import json
import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from data_gateway.core.config import settings
from data_gateway.core.exceptions import ConfigurationError
from data_gateway.core.schemas import RelationshipSchema
from data_gateway.gateway.permissions import DescribeSource

logger = logging.getLogger(settings.APP_NAME)

RecordSchemas = Dict[str, Dict[str, RelationshipSchema]]


def load_record_schemas(path: Optional[str]) -> RecordSchemas:
    """
    Reads relationship declarations from a JSON file shaped like:

        {"Account": {"relationships": [
            {"relationshipName": "Contacts", "childType": "Contact", "parentField": "AccountId"}
        ]}}

    Returns parent type -> relationship name -> RelationshipSchema.
    """
    if not path:
        return {}
    try:
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read record schemas from {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Record schemas file {path} must contain a JSON object keyed by record type.")

    schemas: RecordSchemas = {}
    for type_name, entry in raw.items():
        relationships = (entry or {}).get("relationships", [])
        try:
            parsed = [RelationshipSchema.model_validate(item) for item in relationships]
        except ValidationError as e:
            raise ConfigurationError(f"Invalid relationship declaration for {type_name}: {e}") from e
        schemas[type_name] = {rel.relationship_name: rel for rel in parsed}
    logger.info(f"Loaded relationship declarations for {len(schemas)} record types from {path}")
    return schemas


class RelationshipResolver:
    """
    Maps a child relationship name on a parent type to its child type and
    parent-link field. Explicit declarations win; otherwise, when enabled,
    the parent's describe childRelationships are consulted.
    """

    def __init__(
        self,
        declared: Optional[RecordSchemas] = None,
        describe_source: Optional[DescribeSource] = None,
    ):
        self.declared = declared or {}
        self.describe_source = describe_source

    async def _from_describe(self, parent_type: str) -> Dict[str, RelationshipSchema]:
        if self.describe_source is None:
            return {}
        describe = await self.describe_source.describe(parent_type)
        relationships = {}
        for rel in describe.get("childRelationships", []):
            name = rel.get("relationshipName")
            if name and rel.get("childSObject") and rel.get("field"):
                relationships[name] = RelationshipSchema(
                    relationship_name=name, child_type=rel["childSObject"], parent_field=rel["field"]
                )
        return relationships

    async def resolve(self, parent_type: str, relationship_names: List[str]) -> Dict[str, RelationshipSchema]:
        """Returns the resolvable subset of relationship_names; unknown names are left out."""
        resolved: Dict[str, RelationshipSchema] = {}
        declared = self.declared.get(parent_type, {})
        pending = []
        for name in relationship_names:
            if name in declared:
                resolved[name] = declared[name]
            else:
                pending.append(name)

        if pending:
            described = await self._from_describe(parent_type)
            for name in pending:
                if name in described:
                    resolved[name] = described[name]
                else:
                    logger.warning(f"Unknown child relationship '{name}' on {parent_type}")
        return resolved
