"""Summary: Instagram Graph API client.

Importance: Wraps the sender lookup, send-message, and account lookup calls behind one timeout policy.
Alternatives: Use a Meta SDK.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from dmfocus.errors import ProviderError
from dmfocus.httpclient import get_json, post_json
from dmfocus.models import SenderProfile


SENDER_FIELDS = "name,username,profile_pic,follower_count"
ACCOUNT_FIELDS = "id,username,account_type,name"
PROFESSIONAL_ACCOUNT_TYPES = ("BUSINESS", "MEDIA_CREATOR")


@dataclass(frozen=True)
class InstagramAccount:
    """Summary: The connected Instagram professional account.

    Importance: Its ID becomes the workspace page ID that webhook entries are matched against.
    Alternatives: Keep the raw /me payload.
    """

    id: str
    username: str
    account_type: str | None
    name: str | None

    @property
    def is_professional(self) -> bool:
        return self.account_type in PROFESSIONAL_ACCOUNT_TYPES


@dataclass(frozen=True)
class InstagramClient:
    """Summary: Thin client over graph.instagram.com.

    Importance: Every call raises ProviderError on failure so callers can choose to degrade.
    Alternatives: Call urllib inline in each service.
    """

    base_url: str
    timeout: int = 20

    def fetch_sender_profile(self, sender_id: str, access_token: str) -> SenderProfile:
        """Summary: Look up a sender's display name, avatar, and follower count.

        Importance: Feeds the classification prompt and the dashboard.
        Alternatives: Show raw sender IDs only.
        """

        payload = get_json(
            f"{self._base()}/{sender_id}",
            params={"fields": SENDER_FIELDS, "access_token": access_token},
            timeout=self.timeout,
            service="Instagram profile lookup",
        )
        return SenderProfile(
            name=payload.get("name"),
            username=payload.get("username"),
            avatar_url=payload.get("profile_pic"),
            followers_count=_parse_count(payload.get("follower_count")),
        )

    def fetch_account(self, access_token: str) -> InstagramAccount:
        """Summary: Fetch the account that owns an access token."""

        payload = get_json(
            f"{self._base()}/me",
            params={"fields": ACCOUNT_FIELDS, "access_token": access_token},
            timeout=self.timeout,
            service="Instagram account lookup",
        )
        if not payload.get("id"):
            raise ProviderError("Instagram account lookup returned no id")
        return InstagramAccount(
            id=str(payload["id"]),
            username=str(payload.get("username") or ""),
            account_type=payload.get("account_type"),
            name=payload.get("name"),
        )

    def send_message(
        self, account_id: str, recipient_id: str, text: str, access_token: str
    ) -> str | None:
        """Summary: Send a direct message from the connected account.

        Importance: Lets creators answer from the dashboard without opening Instagram.
        Alternatives: Deep-link to the Instagram app.
        """

        payload: dict[str, Any] = post_json(
            f"{self._base()}/{account_id}/messages",
            {"recipient": {"id": recipient_id}, "message": {"text": text}},
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout,
            service="Instagram send message",
        )
        message_id = payload.get("message_id")
        return str(message_id) if message_id is not None else None

    def _base(self) -> str:
        return self.base_url.rstrip("/")


def _parse_count(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None
