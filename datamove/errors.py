"""Error taxonomy for data-move runs."""

from typing import Optional


class DataMoveError(Exception):
    """
    Base error for a data-move run.

    Carries the object-set index, entity name and endpoint label of the
    failing object so every fatal message says where it happened.
    """

    def __init__(
        self,
        message: str,
        object_set_index: Optional[int] = None,
        object_name: Optional[str] = None,
        endpoint_label: Optional[str] = None,
    ):
        self.message = message
        self.object_set_index = object_set_index
        self.object_name = object_name
        self.endpoint_label = endpoint_label
        super().__init__(self.__str__())

    def with_context(
        self,
        object_set_index: Optional[int] = None,
        object_name: Optional[str] = None,
        endpoint_label: Optional[str] = None,
    ) -> "DataMoveError":
        """Fill in any context that is still missing and return self."""
        if self.object_set_index is None:
            self.object_set_index = object_set_index
        if self.object_name is None:
            self.object_name = object_name
        if self.endpoint_label is None:
            self.endpoint_label = endpoint_label
        self.args = (self.__str__(),)
        return self

    def __str__(self) -> str:
        context = []
        if self.object_set_index is not None:
            context.append(f"object set {self.object_set_index}")
        if self.object_name:
            context.append(f"object {self.object_name}")
        if self.endpoint_label:
            context.append(f"endpoint {self.endpoint_label}")
        if not context:
            return self.message
        return f"[{', '.join(context)}] {self.message}"


class ConfigurationError(DataMoveError):
    """The script or the run configuration is invalid."""


class SchemaError(DataMoveError):
    """An entity or a required field is missing from an endpoint schema."""


class TransportError(DataMoveError):
    """A describe, query or update call against an endpoint failed."""


class StreamError(TransportError):
    """Reading from a query stream or writing to a working file failed."""
