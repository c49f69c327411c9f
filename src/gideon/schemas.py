"""Pydantic contracts for every Gideon request, inference step and response.

Request models validate raw client input before any inference call is made.
Step models (Identification, HomeworkDraft, Answer, ExtractedText, ProductList)
are sent to the provider as JSON schema and used to validate what comes back.
Result models are what callers receive; they carry no pipeline-internal fields
such as diagram prompts.

Models
------
EncodedMedia
    Image payload parsed from a ``data:<mimetype>;base64,<data>`` URI.
InboundRequest
    Fields shared by every request, type-checked before a pipeline is chosen.
IdentifyRequest, AskRequest, ExtractRequest, HomeworkRequest, ProductsRequest
    Per-pipeline request bodies.
Identification, HomeworkDraft, Answer, ExtractedText, ProductList
    Primary step outputs.
IdentificationResult, HomeworkResult, ProductsResult
    Composed responses.
"""
from __future__ import annotations

import base64
import binascii
import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_IMAGE_BYTES = 4 * 1024 * 1024

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)

CATEGORY_UNKNOWN = "unknown"
Category = Literal["plant", "animal", "landmark", "object", "unknown"]


class EncodedMedia(BaseModel):
    """An image carried as a base64 data URI.

    Accepts either the wire string ``data:image/png;base64,...`` or a mapping
    with ``mime_type`` and ``data``. The decoded payload must be an image no
    larger than MAX_IMAGE_BYTES.
    """

    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: str

    @model_validator(mode="before")
    @classmethod
    def _parse_data_uri(cls, value):
        if isinstance(value, str):
            match = _DATA_URI.match(value.strip())
            if match is None:
                raise ValueError("image must be a data URI of the form 'data:<mimetype>;base64,<encoded_data>'")
            return {"mime_type": match.group("mime"), "data": match.group("data")}
        return value

    @field_validator("mime_type")
    @classmethod
    def _image_mime(cls, value: str) -> str:
        if not value.startswith("image/"):
            raise ValueError(f"unsupported media type {value!r}, expected image/*")
        return value

    @field_validator("data")
    @classmethod
    def _base64_payload(cls, value: str) -> str:
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("image payload is not valid base64") from exc
        if not raw:
            raise ValueError("image payload is empty")
        if len(raw) > MAX_IMAGE_BYTES:
            raise ValueError(f"image is larger than {MAX_IMAGE_BYTES // (1024 * 1024)}MB")
        return value

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class _ImageRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: EncodedMedia


class InboundRequest(_ImageRequest):
    """The request body every pipeline shares. Checked before a pipeline is chosen."""

    question: str | None = None
    task: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class IdentifyRequest(_ImageRequest):
    """Identify the main subject of an image, optionally hinted by the user's location."""

    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def _coordinates_paired(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self

    @property
    def has_location(self) -> bool:
        return self.latitude is not None


class AskRequest(_ImageRequest):
    question: str

    @field_validator("question")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("question must not be blank")
        return value.strip()


class ExtractRequest(_ImageRequest):
    task: str = ""


class HomeworkRequest(_ImageRequest):
    pass


class ProductsRequest(_ImageRequest):
    pass


# ---------------------------------------------------------------------------
# Primary step outputs
# ---------------------------------------------------------------------------


class Source(BaseModel):
    title: str = Field(description='The title of the source website (e.g., "Wikipedia").')
    link: str = Field(description="A relevant URL for more information.")


class Identification(BaseModel):
    identification: str = Field(
        description="The primary identification of the main object, plant, animal, or landmark in the image.",
    )
    category: Category = Field(
        description="The kind of subject identified. Use 'unknown' when nothing can be identified.",
    )
    description: str = Field(
        description="A detailed description. Include care tips for plants and interesting facts for landmarks.",
    )
    location: str | None = Field(
        default=None,
        description="The guessed location (e.g., city, country) if a landmark or strong geographical clues are present.",
    )
    sources: list[Source] | None = Field(default=None, description="1-2 relevant links for more information.")


class DraftSolution(BaseModel):
    question: str = Field(description="The specific question identified from the image.")
    solution: str = Field(description="A step-by-step solution to the problem. Each step MUST be on a new line.")
    diagram_prompt: str | None = Field(
        default=None,
        description=(
            "If a diagram is essential to explain the solution, a detailed prompt for an AI image generator "
            "to create a simple, clean, educational diagram."
        ),
    )


class HomeworkDraft(BaseModel):
    preamble: str = Field(description="A friendly, encouraging preamble, as if from a brilliant and helpful student.")
    solutions: list[DraftSolution] = Field(description="One solution per question found in the image.")


class Answer(BaseModel):
    answer: str = Field(description="The answer to the user's question about the image.")


class ExtractedText(BaseModel):
    result: str = Field(description="The result of the text processing task.")


class Product(BaseModel):
    name: str = Field(description="The product's title or name.")
    brand: str = Field(description="The brand of the product.")
    price: str = Field(description="The price of the product, including currency symbol.")
    link: str = Field(description="A direct shopping link for the product. Do not guess or make up a URL.")
    image_url: str = Field(description="A direct URL for the product's image. Do not guess or make up a URL.")


class ProductList(BaseModel):
    products: list[Product] = Field(description="Products found in the image.")


# ---------------------------------------------------------------------------
# Composed responses
# ---------------------------------------------------------------------------


class IdentificationResult(Identification):
    model_config = ConfigDict(frozen=True)

    generated_image_url: str | None = None


class HomeworkSolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    solution: str
    diagram_url: str | None = None


class HomeworkResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    preamble: str
    solutions: tuple[HomeworkSolution, ...]


class ProductsResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    products: tuple[Product, ...]
    message: str
