"""Entry point for Gideon requests: validate raw input, pick a pipeline, run it.

dispatch() never calls the inference service for input that fails validation.
Fatal pipeline failures are re-raised as DispatchError with a stable kind:

validation_error       the request body does not match the shared or the pipeline's contract
invalid_request        unknown action, or an action missing what it needs
inference_unavailable  the primary inference call failed (see .retryable)
"""
import logging

from pydantic import BaseModel, ValidationError

from src.gideon import orchestrator
from src.gideon.schemas import (
    AskRequest,
    ExtractRequest,
    HomeworkRequest,
    IdentifyRequest,
    InboundRequest,
    ProductsRequest,
)
from src.wrapper import InferenceError

logger = logging.getLogger(__name__)

ACTION_ASK = "ask"
ACTION_IDENTIFY = "identify"
ACTION_SOLVE = "solve"
ACTION_FIND = "find"
ACTION_EXTRACT = "extract"

VALIDATION_ERROR = "validation_error"
INVALID_REQUEST = "invalid_request"
INFERENCE_UNAVAILABLE = "inference_unavailable"

PIPELINES = {
    ACTION_ASK: (AskRequest, "analyze_image"),
    ACTION_IDENTIFY: (IdentifyRequest, "identify_object"),
    ACTION_SOLVE: (HomeworkRequest, "solve_homework"),
    ACTION_FIND: (ProductsRequest, "find_products"),
    ACTION_EXTRACT: (ExtractRequest, "extract_text"),
}

ACTIONS = tuple(PIPELINES)


class DispatchError(Exception):
    """A request that could not be served. kind is validation_error, invalid_request or inference_unavailable."""

    def __init__(self, kind: str, message: str, retryable: bool = False):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "retryable": self.retryable}


def select_action(raw: dict, action: str | None = None) -> str:
    """Return the pipeline for raw. Without an explicit action, a question means ask, otherwise identify."""
    if action is not None:
        if action not in PIPELINES:
            raise DispatchError(INVALID_REQUEST, f"Unknown action: {action!r}. Expected one of {', '.join(ACTIONS)}")
        return action
    question = raw.get("question")
    if isinstance(question, str) and question.strip():
        return ACTION_ASK
    return ACTION_IDENTIFY


def parse_inbound(raw) -> InboundRequest:
    """Check the fields every pipeline shares. Raises DispatchError(validation_error) on a bad type."""
    if not isinstance(raw, dict):
        raise DispatchError(VALIDATION_ERROR, f"Request must be an object, got {type(raw).__name__}")
    return _validate(InboundRequest, raw)


def parse_request(raw: dict, action: str) -> BaseModel:
    """Validate raw against the request model of action. Raises DispatchError before any inference."""
    if not isinstance(raw, dict):
        raise DispatchError(VALIDATION_ERROR, f"Request must be an object, got {type(raw).__name__}")
    model, _ = PIPELINES[action]
    payload = dict(raw)
    if action == ACTION_EXTRACT and not _filled(payload.get("task")) and _filled(payload.get("question")):
        payload["task"] = payload["question"]
    request = _validate(model, payload)
    if action == ACTION_EXTRACT and not request.task.strip():
        raise DispatchError(INVALID_REQUEST, "A task is required to process text (e.g. 'summarize').")
    return request


def _filled(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _validate(model: type[BaseModel], payload: dict) -> BaseModel:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = "; ".join(f"{'.'.join(str(p) for p in e['loc']) or 'request'}: {e['msg']}" for e in exc.errors())
        raise DispatchError(VALIDATION_ERROR, f"Invalid request: {fields}") from exc


async def dispatch(raw: dict, action: str | None = None) -> BaseModel:
    """Validate raw, run the selected pipeline and return its composed response.

    Args:
        raw: Request body: {"image": data URI, "question"?, "task"?, "latitude"?, "longitude"?}.
        action: One of ACTIONS. If None, chosen from the presence of a question.

    Returns:
        The pipeline's response model (Answer, IdentificationResult, HomeworkResult,
        ProductsResult or ExtractedText).

    Raises:
        DispatchError: Validation failed, the action is invalid, or the primary inference call failed.
    """
    parse_inbound(raw)
    selected = select_action(raw, action)
    request = parse_request(raw, selected)
    _, pipeline = PIPELINES[selected]
    logger.info("Dispatching %s request to %s", selected, pipeline)
    try:
        return await getattr(orchestrator, pipeline)(request)
    except InferenceError as exc:
        logger.error("%s failed (%s): %s", pipeline, exc.kind, exc.message)
        raise DispatchError(INFERENCE_UNAVAILABLE, f"Inference failed: {exc.message}", retryable=exc.retryable) from exc
