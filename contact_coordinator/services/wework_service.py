from __future__ import annotations

import asyncio
import logging
from typing import Optional

from wechatpy.crypto import WeChatCrypto, PrpCrypto
from wechatpy.enterprise import WeChatClient
from wechatpy.exceptions import WeChatException

from contact_coordinator.core.config import settings
from contact_coordinator.models import SendOutcome


logger = logging.getLogger(__name__)


class WeWorkService:
    """WeChat Work gateway: callback crypto + outbound transport.

    Lazily initialized based on env settings. Raises ValueError if required
    config is missing when methods are used. ``send`` implements the
    coordinator's transport contract.
    """

    def __init__(self) -> None:
        self._crypto: Optional[WeChatCrypto] = None
        self._client: Optional[WeChatClient] = None

    def _ensure_config(self) -> None:
        required = {
            "WEWORK_CORP_ID": settings.WEWORK_CORP_ID,
            "WEWORK_AGENT_ID": settings.WEWORK_AGENT_ID,
            "WEWORK_SECRET": settings.WEWORK_SECRET,
            "WEWORK_TOKEN": settings.WEWORK_TOKEN,
            "WEWORK_ENCODING_AES_KEY": settings.WEWORK_ENCODING_AES_KEY,
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            raise ValueError(
                "Missing WeChat Work configuration: " + ", ".join(missing)
            )

        aes = settings.WEWORK_ENCODING_AES_KEY or ""
        if len(aes) != 43:
            raise ValueError("WEWORK_ENCODING_AES_KEY must be 43 characters long")

    @property
    def configured(self) -> bool:
        try:
            self._ensure_config()
        except ValueError:
            return False
        return True

    @property
    def crypto(self) -> WeChatCrypto:
        if self._crypto is None:
            self._ensure_config()
            self._crypto = WeChatCrypto(
                token=settings.WEWORK_TOKEN,  # type: ignore[arg-type]
                encoding_aes_key=settings.WEWORK_ENCODING_AES_KEY,  # type: ignore[arg-type]
                app_id=settings.WEWORK_CORP_ID,  # type: ignore[arg-type]
            )
        return self._crypto

    @property
    def client(self) -> WeChatClient:
        if self._client is None:
            self._ensure_config()
            self._client = WeChatClient(  # enterprise client
                settings.WEWORK_CORP_ID or "",
                settings.WEWORK_SECRET or "",
            )
            logger.info("WeWork client initialized")
        return self._client

    # --- Crypto helpers ---
    def verify_url(self, msg_signature: str, timestamp: str, nonce: str, echostr: str) -> str:
        """Verify callback URL and decrypt echo string."""
        try:
            # wechatpy doesn't expose check_signature, use base helper
            decrypted = self.crypto._check_signature(  # type: ignore[attr-defined]
                msg_signature, timestamp, nonce, echostr, PrpCrypto
            )
            return decrypted.decode("utf-8")
        except Exception as e:
            logger.error("URL verification failed: %s", e)
            raise

    def decrypt_message(self, post_data: bytes, msg_signature: str, timestamp: str, nonce: str) -> str:
        try:
            xml = self.crypto.decrypt_message(post_data, msg_signature, timestamp, nonce)
            return xml.decode("utf-8") if isinstance(xml, (bytes, bytearray)) else xml
        except Exception as e:
            logger.error("Decrypt failed: %s", e)
            raise

    # --- Transport ---
    async def send(self, contact_id: str, text: str) -> SendOutcome:
        """Deliver ``text`` to a WeWork user. The SDK is blocking, so it runs in a worker thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._send_text_blocking, contact_id, text)

    def _send_text_blocking(self, contact_id: str, text: str) -> SendOutcome:
        try:
            resp = self.client.message.send_text(
                agent_id=str(settings.WEWORK_AGENT_ID or ""),
                user_ids=contact_id,
                content=text,
            )
        except WeChatException as e:
            logger.error("WeWork send_text failed: %s", e)
            return SendOutcome(ok=False, error=str(e))
        if resp.get("invaliduser"):
            return SendOutcome(ok=False, error=f"invalid user: {resp['invaliduser']}")
        return SendOutcome(ok=True, provider_message_id=resp.get("msgid"))


# Singleton-like accessor
_instance: Optional[WeWorkService] = None


def get_wework_service() -> WeWorkService:
    global _instance
    if _instance is None:
        _instance = WeWorkService()
    return _instance
