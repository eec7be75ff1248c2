from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import markdown2  # pyright: ignore[reportMissingTypeStubs]

from domain.documents import DocumentRegistry, DocumentType


DEFAULT_PARTITION = "recipe"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(kw_only=True)
class Recipe:
    id: str
    title: str
    raw_text: str
    image_ref: str
    search_text: str = ""
    normalized_tags: list[str] = field(default_factory=list)
    pk: str = DEFAULT_PARTITION
    type: str = "Recipe"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __repr__(self) -> str:
        return f"<Recipe(id={self.id}, title={self.title})>"

    @property
    def html(self) -> str:
        return markdown2.markdown(  # pyright: ignore[reportUnknownVariableType, reportUnknownMemberType]
            self.raw_text, extras=["fences", "tables"]
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pk": self.pk,
            "type": self.type,
            "title": self.title,
            "rawText": self.raw_text,
            "imageRef": self.image_ref,
            "searchText": self.search_text,
            "normalizedTags": list(self.normalized_tags),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipe":
        return cls(
            id=data["id"],
            pk=data.get("pk", DEFAULT_PARTITION),
            title=data["title"],
            raw_text=data.get("rawText", ""),
            image_ref=data.get("imageRef", ""),
            search_text=data.get("searchText", ""),
            normalized_tags=list(data.get("normalizedTags") or []),
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
        )


@dataclass(kw_only=True)
class RecipeIngredient:
    id: str
    recipe_id: str
    free_text: str
    position: int
    canonical_name: str | None = None
    pk: str = DEFAULT_PARTITION
    type: str = "RecipeIngredient"
    created_at: datetime = field(default_factory=utcnow)

    def __repr__(self) -> str:
        return (
            f"<RecipeIngredient(id={self.id}, recipe_id={self.recipe_id}, "
            f"position={self.position})>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pk": self.pk,
            "type": self.type,
            "recipeId": self.recipe_id,
            "freeText": self.free_text,
            "canonicalName": self.canonical_name,
            "position": self.position,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecipeIngredient":
        return cls(
            id=data["id"],
            pk=data.get("pk", DEFAULT_PARTITION),
            recipe_id=data["recipeId"],
            free_text=data.get("freeText", ""),
            canonical_name=data.get("canonicalName"),
            position=int(data.get("position", 0)),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


RECIPE = DocumentType(
    tag="Recipe",
    cls=Recipe,
    encode=Recipe.to_dict,
    decode=Recipe.from_dict,
    fields={
        "id": lambda r: r.id,
        "pk": lambda r: r.pk,
        "type": lambda r: r.type,
        "title": lambda r: r.title,
        "rawText": lambda r: r.raw_text,
        "imageRef": lambda r: r.image_ref,
        "searchText": lambda r: r.search_text,
        "normalizedTags": lambda r: r.normalized_tags,
        "createdAt": lambda r: r.created_at.isoformat(),
        "updatedAt": lambda r: r.updated_at.isoformat(),
    },
)


RECIPE_INGREDIENT = DocumentType(
    tag="RecipeIngredient",
    cls=RecipeIngredient,
    encode=RecipeIngredient.to_dict,
    decode=RecipeIngredient.from_dict,
    fields={
        "id": lambda i: i.id,
        "pk": lambda i: i.pk,
        "type": lambda i: i.type,
        "recipeId": lambda i: i.recipe_id,
        "freeText": lambda i: i.free_text,
        "canonicalName": lambda i: i.canonical_name,
        "position": lambda i: i.position,
        "createdAt": lambda i: i.created_at.isoformat(),
    },
)


def recipe_documents() -> DocumentRegistry:
    return DocumentRegistry(RECIPE, RECIPE_INGREDIENT)
