"""Cloud Function entry point for the feedback enrichment pipeline."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import flask
import functions_framework
from pydantic import ValidationError

# Ensure project root is available on import path
project_root = Path(__file__).parent.parent.parent.parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.feedback_enrichment.core.contracts.feedback import FeedbackItem
from src.functions.feedback_enrichment.core.errors import CheckpointError, ConfigurationError
from src.functions.feedback_enrichment.core.orchestration.factory import build_processor
from src.functions.feedback_enrichment.core.orchestration.processor import PipelineProcessor

load_env()
setup_logging(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

ACTIONS = ("start", "resume", "cancel", "status")


class RequestError(ValueError):
    """Raised for malformed request payloads."""


def parse_items(raw: Any, user_id: str) -> List[FeedbackItem]:
    """Validate the ``items`` array; items without a user inherit ``user_id``."""

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise RequestError("'items' must be an array of feedback objects")
    items = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise RequestError(f"items[{index}] must be an object")
        data = {"userId": user_id, **entry}
        try:
            items.append(FeedbackItem.model_validate(data))
        except ValidationError as exc:
            raise RequestError(f"items[{index}] is invalid: {exc.errors()[0]['msg']}") from exc
    return items


async def run_action(
    processor: PipelineProcessor,
    action: str,
    user_id: str,
    items: List[FeedbackItem],
    *,
    resume_from_checkpoint: bool = True,
) -> Dict[str, Any]:
    """Run ``action`` and return the status report; the processor is closed afterwards.

    Checkpoints store ids only, so ``resume`` needs the payloads of the
    checkpointed items to be sent again in ``items``.
    """

    try:
        if action == "start":
            await processor.start(user_id, items, resume_from_checkpoint=resume_from_checkpoint)
        elif action == "resume":
            checkpoint = await processor.hydrate_from_checkpoint(user_id, items)
            if checkpoint is not None and checkpoint.pending_ids and not items:
                raise RequestError("'items' must contain the checkpointed feedback to resume")
            await processor.resume()
        elif action == "cancel":
            await processor.hydrate_from_checkpoint(user_id, items)
            await processor.cancel()
        else:
            await processor.hydrate_from_checkpoint(user_id, items)
        return processor.status_report()
    finally:
        await processor.aclose()


def handle_request(payload: Dict[str, Any], processor: Optional[PipelineProcessor] = None) -> Tuple[Dict[str, Any], int]:
    """Run one pipeline action and return ``(body, status_code)``."""

    action = payload.get("action", "start")
    if action not in ACTIONS:
        return {"status": "error", "message": f"'action' must be one of {', '.join(ACTIONS)}"}, 400

    user_id = payload.get("user_id") or payload.get("userId")
    if not isinstance(user_id, str) or not user_id.strip():
        return {"status": "error", "message": "'user_id' is required"}, 400
    user_id = user_id.strip()

    config_overrides = payload.get("config")
    if config_overrides is not None and not isinstance(config_overrides, dict):
        return {"status": "error", "message": "'config' must be an object"}, 400

    try:
        items = parse_items(payload.get("items"), user_id)
    except RequestError as exc:
        return {"status": "error", "message": str(exc)}, 400

    try:
        processor = processor or build_processor(
            user_id,
            config_overrides=config_overrides,
            dry_run=bool(payload.get("dry_run", False)),
        )
        report = asyncio.run(
            run_action(
                processor,
                action,
                user_id,
                items,
                resume_from_checkpoint=payload.get("resume_from_checkpoint", True) is not False,
            )
        )
    except RequestError as exc:
        return {"status": "error", "message": str(exc)}, 400
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc, extra={"metadata": exc.metadata})
        return {"status": "error", "message": f"Configuration error: {exc}"}, 500
    except CheckpointError as exc:
        logger.error("Checkpoint error: %s", exc, extra={"metadata": exc.metadata})
        return {"status": "error", "message": f"Checkpoint error: {exc}"}, 500

    if report.get("stop_reason") == "quota_exceeded":
        return {"status": "quota_exceeded", **report}, 402
    return {"status": "success", **report}, 200


def enrichment_handler(request: flask.Request) -> flask.Response:
    """HTTP handler running start, resume, cancel or status for one user."""

    if request.method == "OPTIONS":
        return _cors_response({}, status=204)

    if request.method != "POST":
        return _error_response("Method not allowed. Use POST.", status=405)

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _error_response("Request body must be a JSON object", status=400)
    logger.info("Received enrichment invocation with payload keys: %s", list(payload.keys()))

    body, status = handle_request(payload)
    logger.info(
        "Enrichment request finished: status=%s queued=%s processed=%s",
        body.get("status"),
        body.get("queued"),
        len(body.get("processed_ids") or []),
    )
    return _cors_response(body, status=status)


def health_check_handler(request: flask.Request) -> flask.Response:
    """Health check endpoint returning module status."""

    return _cors_response({"status": "healthy", "module": "feedback_enrichment"})


def _cors_response(body: Dict[str, Any], status: int = 200) -> flask.Response:
    response = flask.make_response(json.dumps(body, ensure_ascii=False, default=str), status)
    headers = response.headers
    headers["Content-Type"] = "application/json"
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
    headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization,X-API-Key"
    return response


def _error_response(message: str, status: int) -> flask.Response:
    return _cors_response({"status": "error", "message": message}, status=status)


@functions_framework.http
def run_enrichment(request: flask.Request):
    return enrichment_handler(request)


@functions_framework.http
def health_check(request: flask.Request):
    return health_check_handler(request)
