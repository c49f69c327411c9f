"""Orchestrates the Gideon pipelines: one primary structured call, then optional image synthesis.

Pipeline shapes
---------------
identify_object  primary Identification call, then at most one image synthesis.
solve_homework   primary HomeworkDraft call, then one diagram synthesis per
                 solution that asks for it, all run concurrently and joined.
analyze_image, extract_text, find_products
                 single primary call.

A failing primary call raises InferenceError to the caller. A failing secondary
call is logged and its artifact is left out of the response.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, Union

from src.gideon.schemas import (
    CATEGORY_UNKNOWN,
    Answer,
    AskRequest,
    ExtractedText,
    ExtractRequest,
    HomeworkDraft,
    HomeworkRequest,
    HomeworkResult,
    HomeworkSolution,
    Identification,
    IdentificationResult,
    IdentifyRequest,
    ProductList,
    ProductsRequest,
    ProductsResult,
)
from src.wrapper import InferenceError, invoke, synthesize_image

logger = logging.getLogger(__name__)

IDENTIFY_PROMPT = """You are a world-class AI identification expert. Analyze the image and identify its contents by following a structured process.

1. Categorize: decide whether the main subject is a plant, animal, landmark, or a general object. If nothing can be identified, use the category "unknown".
2. Analyze: for a plant or animal give its species name; for a landmark give its name, using the user's location as a strong hint when provided; for a general object give the object and its purpose.
3. Explain: provide the primary identification and a detailed description. For a plant include care tips, for a landmark include interesting facts. If you identified a location, state it clearly.
4. Sources: give 1-2 relevant, high-quality links for more information, such as a Wikipedia page, an official website, or a Google Maps link.

Format your response strictly according to the output schema.
{location_hint}"""

LOCATION_HINT = "User's Location: Latitude {latitude}, Longitude {longitude}"

IDENTIFY_IMAGE_PROMPT = (
    'A high-quality, clear, photorealistic image of a single "{label}". '
    "The object should be centered against a plain, neutral background."
)

HOMEWORK_PROMPT = """You are an expert tutor with the persona of a brilliant, enthusiastic, and friendly student who loves to help others. Solve all the math and science problems in the image.

1. Start with a fun, encouraging preamble.
2. Identify every distinct question in the image.
3. For each question give a clear, step-by-step solution, explaining each step simply. Put each step on a new line.
4. For each solution decide whether a diagram would make it easier to understand (geometric shapes, graphs, free-body diagrams). If so, write a concise but descriptive diagram_prompt for an AI image generator that results in a clean, simple, educational diagram. Otherwise leave diagram_prompt empty.

Format your response strictly according to the output schema."""

DIAGRAM_PROMPT = (
    "Create a clear, simple, educational diagram for a student. "
    "Style: minimalist, black and white, clean lines. Diagram topic: {topic}"
)

ASK_PROMPT = """You are a helpful visual assistant. Look carefully at the image and answer the user's question about it accurately and concisely.

Question: {question}"""

EXTRACT_PROMPT = """You are an AI assistant that is an expert at processing text from images. First, carefully read and extract all the text from the image.
Then, perform the following task on the extracted text: {task}
If the task is empty or just says "extract", simply return the extracted text.
Present only the final result of the task."""

PRODUCTS_PROMPT = """You are a world-class AI personal shopper. Find the exact product shown in the user's image.

1. Analyze the image: identify the main product and note brand, logos, text, color, material, shape, and unique features.
2. Search your knowledge of official brand sites and major retailers (Amazon, AliExpress, Temu, Jumia, eBay) for matching listings, preferring strong visual and textual matches.
3. For the top matches give the product name, brand, price with currency, a direct shopping link, and the product's image URL. Do not invent or guess URLs; only give links you are highly confident are correct.

If you cannot find any high-confidence matches, return an empty list."""

NO_PRODUCTS_MESSAGE = "I couldn't find any products in the image."


# ---------------------------------------------------------------------------
# Fan-out / join
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    value: Any


@dataclass(frozen=True)
class Failure:
    error: InferenceError


Outcome = Union[Success, Failure]


async def settle(call: Awaitable) -> Outcome:
    """Await call and wrap the result. Only InferenceError becomes a Failure."""
    try:
        return Success(await call)
    except InferenceError as exc:
        return Failure(exc)


async def fan_out(calls: Iterable[Awaitable]) -> list[Outcome]:
    """Run calls concurrently; return one Outcome per call, in order, once all have settled."""
    return list(await asyncio.gather(*(settle(c) for c in calls)))


def _artifact_url(outcome: Outcome | None) -> str | None:
    if isinstance(outcome, Success):
        return outcome.value.url
    return None


# ---------------------------------------------------------------------------
# Identification
# ---------------------------------------------------------------------------


def wants_image(primary: Identification) -> bool:
    return bool(primary.identification.strip()) and primary.category != CATEGORY_UNKNOWN


def compose_identification(primary: Identification, image: Outcome | None) -> IdentificationResult:
    return IdentificationResult(
        **primary.model_dump(),
        generated_image_url=_artifact_url(image),
    )


async def identify_object(request: IdentifyRequest) -> IdentificationResult:
    """Identify the subject of the image and attach a generated look-alike image when one can be made."""
    location_hint = ""
    if request.has_location:
        location_hint = LOCATION_HINT.format(latitude=request.latitude, longitude=request.longitude)
    primary = await invoke(IDENTIFY_PROMPT, {"location_hint": location_hint}, Identification, image=request.image)

    image = None
    if wants_image(primary):
        image = await settle(synthesize_image(IDENTIFY_IMAGE_PROMPT, {"label": primary.identification.strip()}))
        if isinstance(image, Failure):
            logger.warning("Image generation failed (%s): %s", image.error.kind, image.error.message)
    return compose_identification(primary, image)


# ---------------------------------------------------------------------------
# Homework
# ---------------------------------------------------------------------------


def compose_homework(draft: HomeworkDraft, diagrams: dict[int, Outcome]) -> HomeworkResult:
    """Replace each solution's diagram prompt with the diagram URL, keyed by solution index."""
    return HomeworkResult(
        preamble=draft.preamble,
        solutions=tuple(
            HomeworkSolution(
                question=item.question,
                solution=item.solution,
                diagram_url=_artifact_url(diagrams.get(i)),
            )
            for i, item in enumerate(draft.solutions)
        ),
    )


async def solve_homework(request: HomeworkRequest) -> HomeworkResult:
    draft = await invoke(HOMEWORK_PROMPT, {}, HomeworkDraft, image=request.image)

    indexes = [i for i, item in enumerate(draft.solutions) if item.diagram_prompt and item.diagram_prompt.strip()]
    outcomes = await fan_out(
        synthesize_image(DIAGRAM_PROMPT, {"topic": draft.solutions[i].diagram_prompt.strip()}) for i in indexes
    )
    for i, outcome in zip(indexes, outcomes):
        if isinstance(outcome, Failure):
            logger.warning("Diagram generation failed for solution %d (%s): %s", i, outcome.error.kind, outcome.error.message)
    logger.info(
        "Homework: %d solution(s), %d diagram(s) requested, %d generated",
        len(draft.solutions),
        len(indexes),
        sum(isinstance(o, Success) for o in outcomes),
    )
    return compose_homework(draft, dict(zip(indexes, outcomes)))


# ---------------------------------------------------------------------------
# Single-step pipelines
# ---------------------------------------------------------------------------


async def analyze_image(request: AskRequest) -> Answer:
    return await invoke(ASK_PROMPT, {"question": request.question}, Answer, image=request.image)


async def extract_text(request: ExtractRequest) -> ExtractedText:
    return await invoke(EXTRACT_PROMPT, {"task": request.task.strip() or "extract"}, ExtractedText, image=request.image)


def compose_products(found: ProductList) -> ProductsResult:
    if not found.products:
        return ProductsResult(products=(), message=NO_PRODUCTS_MESSAGE)
    return ProductsResult(
        products=tuple(found.products),
        message=f"I found {len(found.products)} product(s) in the image.",
    )


async def find_products(request: ProductsRequest) -> ProductsResult:
    return compose_products(await invoke(PRODUCTS_PROMPT, {}, ProductList, image=request.image))
