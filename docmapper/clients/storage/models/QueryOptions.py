from typing import Any

from pydantic import BaseModel, Field, field_validator


class FindOptions(BaseModel):
    """
    Cursor options of a find call.

    Attributes:
        sort (list[str] | None): Field paths, most significant first. A leading "-" sorts descending.
        skip (int | None): Number of leading matches to drop.
        limit (int | None): Maximum number of matches to return. 0 or None means unlimited.
    """

    sort: list[str] | None = None
    skip: int | None = Field(default=None, ge=0)
    limit: int | None = Field(default=None, ge=0)

    @field_validator("sort", mode="before")
    @classmethod
    def _split_sort(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    def get_sort_keys(self) -> list[tuple[str, int]]:
        """Returns ``(path, direction)`` pairs with direction 1 (ascending) or -1 (descending)."""
        keys = []
        for entry in self.sort or []:
            if entry.startswith("-"):
                keys.append((entry[1:], -1))
            else:
                keys.append((entry.lstrip("+"), 1))
        return keys


class UpdateOptions(BaseModel):
    """Options of find_one_and_update. ``upsert`` inserts a record when nothing matches."""

    upsert: bool = False


class IndexOptions(BaseModel):
    unique: bool = False
    sparse: bool = False


def as_find_options(options: FindOptions | dict | None) -> FindOptions:
    if isinstance(options, FindOptions):
        return options
    return FindOptions(**(options or {}))


def as_update_options(options: UpdateOptions | dict | None) -> UpdateOptions:
    if isinstance(options, UpdateOptions):
        return options
    return UpdateOptions(**(options or {}))


def as_index_options(options: IndexOptions | dict | None) -> IndexOptions:
    if isinstance(options, IndexOptions):
        return options
    return IndexOptions(**(options or {}))
