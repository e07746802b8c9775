import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional

from homebase import config

logger = logging.getLogger(__name__)


class PushDeliveryError(RuntimeError):
    pass


@dataclass
class PushResult:
    sent: int = 0
    failed: int = 0
    invalid_tokens: List[str] = field(default_factory=list)


class PushSender:
    """Firebase Cloud Messaging multicast sender, initialised on first use."""

    def __init__(self, credentials_path: Optional[str] = None) -> None:
        self._lock = Lock()
        self._credentials_path = (credentials_path if credentials_path is not None else config.FIREBASE_CREDENTIALS_PATH).strip()
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def configured(self) -> bool:
        return bool(self._credentials_path)

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            if not self._credentials_path:
                self._initialized = True
                self._enabled = False
                logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except Exception:
                self._initialized = True
                self._enabled = False
                logger.exception("Push sender disabled: firebase-admin import failed")
                return

            try:
                cred = credentials.Certificate(self._credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized")
            except Exception:
                self._enabled = False
                logger.exception("Push sender disabled: Firebase init failed")
            finally:
                self._initialized = True

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> PushResult:
        self._ensure_initialized()
        if not self._enabled:
            raise PushDeliveryError("Push sender is not configured")
        if not tokens:
            return PushResult()
        assert self._messaging is not None
        message = self._messaging.MulticastMessage(
            notification=self._messaging.Notification(title=title, body=body),
            tokens=tokens,
            data=data,
        )
        try:
            batch = self._messaging.send_each_for_multicast(message)
        except Exception as exc:
            raise PushDeliveryError(f"Push send failed: {exc}") from exc
        result = PushResult()
        for idx, response in enumerate(batch.responses):
            if response.success:
                result.sent += 1
                continue
            result.failed += 1
            error_text = str(response.exception).lower() if response.exception else ""
            if "registration token" in error_text or "invalid argument" in error_text:
                result.invalid_tokens.append(tokens[idx])
        return result


push_sender = PushSender()
