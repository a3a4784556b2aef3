"""
Reference Models
----------------
Pydantic models for bulk reference responses and the entities the
resolvers cache.
"""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class RefType(BaseModel):
    """One item of a /reference/types response."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    group_id: Optional[int] = Field(default=None, alias="groupId")
    volume: Optional[float] = None
    packaged_volume: Optional[float] = Field(default=None, alias="packagedVolume")


class RefTypeBulkResponse(BaseModel):
    items: Dict[str, RefType]


class RefMoon(BaseModel):
    """One item of a /reference/moons response."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    system_id: int = Field(alias="systemId")


class RefMoonBulkResponse(BaseModel):
    items: Dict[str, RefMoon]


class CachedType(BaseModel):
    """Type entity as held in the reference store."""
    id: int
    name: str
    group_id: int = 0
    group_name: str = ""
    category_id: int = 0
    category_name: str = ""
    volume: float = 0.0
    packaged_volume: Optional[float] = None
    placeholder: bool = False

    @classmethod
    def from_ref(cls, item: RefType) -> "CachedType":
        return cls(
            id=item.id,
            name=item.name,
            group_id=item.group_id or 0,
            volume=item.volume or 0.0,
            packaged_volume=item.packaged_volume,
        )

    @classmethod
    def unknown(cls, type_id: int) -> "CachedType":
        return cls(id=type_id, name=f"Unknown Type {type_id}", placeholder=True)


class CachedLocation(BaseModel):
    """Location entity as held in the reference store."""
    id: int
    name: str
    type: str = "station"
    solar_system_id: Optional[int] = None
    placeholder: bool = False

    @classmethod
    def from_moon(cls, moon: RefMoon) -> "CachedLocation":
        return cls(id=moon.id, name=moon.name, type="celestial", solar_system_id=moon.system_id)
