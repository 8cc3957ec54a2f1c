"""Describe cache and schema-driven field helpers."""

import logging
from typing import Dict, List, Optional, Tuple

from ..constants import (
    DEFAULT_EXTERNAL_ID,
    FIELD_KEYWORD_ALL,
    FIELD_KEYWORD_CUSTOM,
    FIELD_KEYWORD_LOOKUP,
    FIELD_KEYWORD_STANDARD,
    FIELD_KEYWORD_UPDATEABLE,
    ID_FIELD,
)
from ..endpoints.base import BaseEndpoint
from ..errors import DataMoveError
from ..models.describe import FieldDescribe, SObjectDescribe
from ..models.script import split_external_id

logger = logging.getLogger(__name__)

# Types that cannot be selected or written as plain columns
COMPOUND_FIELD_TYPES = ("address", "location")


class SchemaRegistry:
    """
    Cache of entity describes per endpoint.

    Describes are keyed by endpoint id, so two endpoints pointing at the same
    store share one describe call.
    """

    def __init__(self):
        self.describes: Dict[Tuple[str, str], SObjectDescribe] = {}

    def get_cached(self, endpoint_id: str, object_name: str) -> Optional[SObjectDescribe]:
        return self.describes.get((endpoint_id, object_name))

    async def describe(self, endpoint: BaseEndpoint, object_name: str) -> SObjectDescribe:
        """Describe an entity, calling the endpoint only once per store and entity."""
        cached = self.get_cached(endpoint.endpoint_id, object_name)
        if cached:
            return cached

        try:
            describe = await endpoint.describe(object_name)
        except DataMoveError as e:
            raise e.with_context(object_name=object_name, endpoint_label=endpoint.label)

        self.describes[(endpoint.endpoint_id, object_name)] = describe
        logger.info(f"Described {object_name} on {endpoint.label}")
        return describe


def expand_field_keywords(keyword: str, describe: SObjectDescribe) -> List[str]:
    """Field names selected by a SELECT-list keyword such as ``all`` or ``lookup``."""
    keyword = keyword.lower()
    fields = [f for f in describe.fields.values() if f.type not in COMPOUND_FIELD_TYPES]

    if keyword == FIELD_KEYWORD_ALL:
        selected = fields
    elif keyword == FIELD_KEYWORD_CUSTOM:
        selected = [f for f in fields if f.custom]
    elif keyword == FIELD_KEYWORD_STANDARD:
        selected = [f for f in fields if not f.custom]
    elif keyword == FIELD_KEYWORD_UPDATEABLE:
        selected = [f for f in fields if f.createable or f.updateable]
    elif keyword == FIELD_KEYWORD_LOOKUP:
        selected = [f for f in fields if f.is_lookup]
    else:
        raise ValueError(f"Unknown field keyword: {keyword}")

    return [f.name for f in selected]


def default_external_id(object_name: str, describe: Optional[SObjectDescribe]) -> str:
    """
    Pick the external id of an entity that has none configured.

    The well-known default for the entity wins when all of its fields exist,
    then the name field, an auto-number field, a unique field and finally
    the record id.
    """
    known = DEFAULT_EXTERNAL_ID.get(object_name)
    if describe is None:
        return known or ID_FIELD

    if known and all(describe.has_field(part) for part in split_external_id(known)):
        return known

    fields: List[FieldDescribe] = list(describe.fields.values())
    for predicate in (
        lambda f: f.name_field,
        lambda f: f.auto_number,
        lambda f: f.unique and f.name != ID_FIELD,
    ):
        for field_describe in fields:
            if predicate(field_describe):
                return field_describe.name

    return ID_FIELD
