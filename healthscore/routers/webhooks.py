"""Wearable integration webhook handler.

Receives health-data events from the Terra integration, applies the
payload size guard, and runs each delivery through the enrichment
pipeline (extract → per-device upsert → daily aggregate).

Status codes tell the provider whether to redeliver:
- 200: processed (or acknowledged and ignored)
- 400: body is not a JSON object (no retry helps)
- 401: signature check failed
- 413: body too large, or too large and enrichment extraction failed
- 500: at least one per-device write failed (redelivery is safe)
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from healthscore.dependencies import AppSettings, Guard, Pipeline
from healthscore.enrichment.errors import MalformedPayloadError, PayloadTooLargeError
from healthscore.enrichment.payload_guard import MODE_FULL, format_mb
from healthscore.models.enrichment import WebhookAck

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("healthscore.webhooks")


def _verify_terra_signature(payload: bytes, signature_header: str, secret: str) -> bool:
    """Verify a ``terra-signature`` header.

    The header has the form ``t=<timestamp>,v1=<hex digest>``; the digest is
    an HMAC-SHA256 of ``{timestamp}.{body}`` keyed with the signing secret.
    """
    parts: dict[str, list[str]] = {}
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if value:
            parts.setdefault(key, []).append(value)

    timestamps = parts.get("t")
    if not timestamps:
        return False

    to_sign = timestamps[0].encode() + b"." + payload
    expected = hmac.new(secret.encode(), to_sign, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in parts.get("v1", []))


def _declared_length(request: Request) -> int | None:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _ack(status_code: int, ack: WebhookAck) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ack.model_dump())


@router.post("/terra", response_model=WebhookAck)
async def terra_webhook(
    request: Request,
    pipeline: Pipeline,
    guard: Guard,
    settings: AppSettings,
    terra_signature: str | None = Header(default=None, alias="terra-signature"),
):
    """Handle a Terra event delivery."""
    try:
        body = await guard.read_body(request.stream(), _declared_length(request))
    except PayloadTooLargeError as exc:
        return _ack(
            413,
            WebhookAck(
                success=False, message=str(exc), payload_size_mb=format_mb(exc.size_bytes)
            ),
        )

    if settings.terra_webhook_secret:
        if not terra_signature or not _verify_terra_signature(
            body, terra_signature, settings.terra_webhook_secret
        ):
            logger.warning("Rejecting Terra webhook with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        guarded = await guard.inspect(body)
    except PayloadTooLargeError as exc:
        return _ack(
            413,
            WebhookAck(
                success=False, message=str(exc), payload_size_mb=format_mb(exc.size_bytes)
            ),
        )
    except MalformedPayloadError as exc:
        return _ack(
            400,
            WebhookAck(success=False, message=str(exc), payload_size_mb=format_mb(len(body))),
        )

    event_type = guarded.envelope.get("type")
    logger.info(
        "Terra webhook received: type=%s size=%sMB mode=%s",
        event_type, guarded.size_mb, guarded.processing_mode,
    )

    try:
        result = await pipeline.process_event(guarded.envelope)
    except Exception:
        logger.exception("Unexpected error processing Terra %s webhook", event_type)
        return _ack(
            500,
            WebhookAck(
                success=False,
                message="Internal error processing webhook",
                processing_mode=guarded.processing_mode,
                payload_size_mb=guarded.size_mb,
            ),
        )

    if not result.success:
        return _ack(
            500,
            WebhookAck(
                success=False,
                message=f"Failed to store {result.storage_failures} enrichment record(s)",
                processing_mode=guarded.processing_mode,
                payload_size_mb=guarded.size_mb,
                records_stored=result.stored,
                records_skipped=result.skipped,
            ),
        )

    if guarded.processing_mode == MODE_FULL:
        message = "Webhook processed successfully"
    else:
        message = "Webhook processed successfully (enrichment data only)"

    return WebhookAck(
        success=True,
        message=message,
        processing_mode=guarded.processing_mode,
        payload_size_mb=guarded.size_mb,
        records_stored=result.stored,
        records_skipped=result.skipped,
    )
