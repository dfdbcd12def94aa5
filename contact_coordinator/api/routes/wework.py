from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
import xmltodict

from contact_coordinator.core.engine import get_coordinator
from contact_coordinator.models import Handler, HandlerContext, InboundMessage
from contact_coordinator.services.coordinator import MessageCoordinator
from contact_coordinator.services.wework_service import get_wework_service


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/wework", tags=["WeChat Work"])


@router.get("/callback")
async def wework_verify(msg_signature: str, timestamp: str, nonce: str, echostr: str):
    """WeChat Work URL verification."""
    try:
        service = get_wework_service()
        reply = service.verify_url(msg_signature, timestamp, nonce, echostr)
        # Must return plain text echo
        return PlainTextResponse(content=reply)
    except Exception as e:
        logger.error("WeWork verify failed: %s", e)
        raise HTTPException(status_code=400, detail="verification failed")


@router.post("/callback")
async def wework_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    msg_signature: str,
    timestamp: str,
    nonce: str,
    coordinator: MessageCoordinator = Depends(get_coordinator),
):
    """WeChat Work message callback.

    Acknowledges immediately; the message goes through the coordinator in the
    background and any reply is sent as an active message.
    """
    try:
        body = await request.body()
        service = get_wework_service()
        decrypted_xml = service.decrypt_message(body, msg_signature, timestamp, nonce)
        msg_dict = xmltodict.parse(decrypted_xml)["xml"]

        msg_type = (msg_dict.get("MsgType") or "").lower()
        if msg_type != "text":
            # ignore non-text
            return PlainTextResponse(content="")

        text = (msg_dict.get("Content") or "").strip()
        from_user = msg_dict.get("FromUserName")
        if not text or not from_user:
            return PlainTextResponse(content="")

        handler: Optional[Handler] = getattr(request.app.state, "message_handler", None)
        if handler is None:
            logger.warning("No message handler registered, dropping message from %s", from_user)
            return PlainTextResponse(content="")

        message = {
            "text": text,
            "kind": msg_type,
            "metadata": {
                "msg_id": msg_dict.get("MsgId") or msg_dict.get("MsgID"),
                "to_user": msg_dict.get("ToUserName"),
                "create_time": msg_dict.get("CreateTime"),
            },
        }
        background_tasks.add_task(_dispatch, coordinator, from_user, message, handler)
        return PlainTextResponse(content="")
    except Exception as e:
        # Always 200 to avoid retries; log for debugging
        logger.error("WeWork callback error: %s", e, exc_info=True)
        return PlainTextResponse(content="", status_code=200)


async def _dispatch(coordinator: MessageCoordinator, contact_id: str, message: dict, handler: Handler) -> None:
    result = await coordinator.process_message(contact_id, message, replying(coordinator, handler))
    if result.status == "error":
        logger.warning("WeWork message from %s failed: %s", contact_id, result.error)


def replying(coordinator: MessageCoordinator, handler: Handler) -> Handler:
    """Wrap ``handler`` so its reply text goes out through the coordinator.

    The reply is sent while the contact's lock is held, including for
    messages drained from the queue.
    """

    async def _handle(message: InboundMessage, ctx: HandlerContext) -> Any:
        result = await handler(message, ctx)
        text = reply_text(result)
        if text:
            sent = await coordinator.send_response(ctx.contact_id, text)
            if not sent.sent and sent.reason != "duplicate_blocked":
                logger.error("Reply to %s not delivered: %s", ctx.contact_id, sent.error)
        return result

    return _handle


def reply_text(result: Any) -> Optional[str]:
    if isinstance(result, str):
        return result.strip() or None
    if isinstance(result, dict):
        for key in ("response", "text", "result_text"):
            value = result.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None
