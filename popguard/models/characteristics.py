"""Popup Characteristics — the feature vector captured for one popup."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


BOOLEAN_FEATURES = (
    "has_close_button",
    "contains_ads",
    "has_external_links",
    "is_modal",
)


class Dimensions(BaseModel):
    """Rendered popup size in CSS pixels."""

    model_config = ConfigDict(frozen=True)

    width: int = Field(ge=0)
    height: int = Field(ge=0)


class Characteristics(BaseModel):
    """
    Feature vector produced by the characteristic extractor.

    Every field is optional: a field left as None is "missing" and is
    excluded from similarity scoring on both sides. Serialized with the
    camelCase keys the browser extension writes (hasCloseButton, zIndex, ...).
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    has_close_button: Optional[bool] = None
    contains_ads: Optional[bool] = None
    has_external_links: Optional[bool] = None
    is_modal: Optional[bool] = None
    z_index: Optional[int] = None
    dimensions: Optional[Dimensions] = None

    @classmethod
    def from_raw(cls, data: Any) -> "Characteristics":
        """
        Build Characteristics from an extractor payload without ever raising.

        Fields that fail validation are dropped (treated as missing) so a
        partially broken extraction still yields a usable vector.
        """
        if isinstance(data, Characteristics):
            return data
        if not isinstance(data, dict):
            return cls()

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            bad_fields = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
            cleaned = {
                k: v for k, v in data.items()
                if k not in bad_fields and to_camel(k) not in bad_fields
            }
            try:
                return cls.model_validate(cleaned)
            except ValidationError:
                return cls()

    def present_booleans(self) -> dict:
        """Boolean features that carry a value."""
        values = {}
        for name in BOOLEAN_FEATURES:
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        return values
