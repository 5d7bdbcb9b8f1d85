"""
Message store: direct messages between pairs of users.

Messages are bucketed by conversation_key(a, b), which is the same for both
participants. The conversation list is rebuilt from scratch every time the
bucket map changes.
"""

import logging
from itertools import chain
from typing import Dict, List, Optional
from urllib.parse import quote_plus

from bson import ObjectId

from backend import AuthSession, BackendClient
from catalog import fetch_seller_profiles
from errors import MarketError
from notifications import Notifier
from realtime import ChangeEvent, Subscription, TaskSet
from schemas import Conversation, Message, utcnow
from session_store import SessionStore

logger = logging.getLogger(__name__)


def conversation_key(user_a: str, user_b: str) -> str:
    return "-".join(sorted([user_a, user_b]))


def placeholder_name(user_id: str) -> str:
    return f"User {user_id[:4]}"


def placeholder_avatar(name: str) -> str:
    return f"https://ui-avatars.com/api/?name={quote_plus(name)}&background=random"


def build_conversations(messages: Dict[str, List[Message]], current_user_id: str,
                        profiles: Optional[Dict[str, dict]] = None) -> List[Conversation]:
    profiles = profiles or {}
    conversations: Dict[str, Conversation] = {}
    for message in chain.from_iterable(messages.values()):
        other = message.receiver_id if message.sender_id == current_user_id else message.sender_id
        conversation = conversations.get(other)
        if conversation is None:
            profile = profiles.get(other) or {}
            name = profile.get("full_name") or placeholder_name(other)
            conversation = Conversation(
                user_id=other,
                user_name=name,
                user_image=profile.get("avatar_url") or placeholder_avatar(name),
                last_message=message.content,
                timestamp=message.timestamp,
            )
            conversations[other] = conversation
        elif message.timestamp >= conversation.timestamp:
            conversation.last_message = message.content
            conversation.timestamp = message.timestamp
        if message.sender_id != current_user_id and not message.read:
            conversation.unread_count += 1
    return sorted(conversations.values(), key=lambda c: c.timestamp, reverse=True)


class MessageStore:
    def __init__(self, client: BackendClient, session: SessionStore, notifier: Notifier, tasks: TaskSet):
        self._client = client
        self._session = session
        self._notifier = notifier
        self._tasks = tasks
        self.messages: Dict[str, List[Message]] = {}
        self.conversations: List[Conversation] = []
        self._profiles: Dict[str, dict] = {}
        self._subscription: Optional[Subscription] = None
        session.add_listener(self._on_session_change)

    def _on_session_change(self, session: Optional[AuthSession]) -> None:
        if session:
            if self._subscription is None:
                self._subscription = self._client.channel("messages", self._on_change)
            self._tasks.spawn(self.fetch_messages())
        else:
            self.stop()
            self._profiles = {}
            self._set_messages({})

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_change(self, event: ChangeEvent) -> None:
        user_id = self._session.user_id
        if user_id in (event.record.get("sender_id"), event.record.get("receiver_id")):
            self._tasks.spawn(self.fetch_messages())

    def _set_messages(self, messages: Dict[str, List[Message]]) -> None:
        self.messages = messages
        self.conversations = build_conversations(messages, self._session.user_id or "", self._profiles)

    def get_thread(self, other_user_id: str) -> List[Message]:
        user_id = self._session.user_id
        if not user_id:
            return []
        return list(self.messages.get(conversation_key(user_id, other_user_id), []))

    def unread_total(self) -> int:
        return sum(c.unread_count for c in self.conversations)

    async def fetch_messages(self) -> Dict[str, List[Message]]:
        user_id = self._session.user_id
        if not user_id:
            return self.messages
        try:
            rows = await self._client.table("messages").select(order_by="timestamp")
        except MarketError as e:
            logger.error("Error fetching messages: %s", e.message)
            return self.messages

        buckets: Dict[str, List[Message]] = {}
        for row in rows:
            message = Message(**row)
            buckets.setdefault(conversation_key(message.sender_id, message.receiver_id), []).append(message)

        others = {m.receiver_id if m.sender_id == user_id else m.sender_id for m in chain.from_iterable(buckets.values())}
        missing = [uid for uid in others if uid not in self._profiles]
        if missing:
            self._profiles.update(await fetch_seller_profiles(self._client, missing))

        if self._session.user_id == user_id:
            self._set_messages(buckets)
        return self.messages

    async def send_message(self, receiver_id: str, content: str, product_id: Optional[str] = None) -> Optional[Message]:
        user_id = self._session.user_id
        if not user_id:
            self._notifier.error("You must be logged in to send messages")
            return None
        if not content.strip():
            self._notifier.error("Message cannot be empty")
            return None

        message = Message(
            id=str(ObjectId()),
            sender_id=user_id,
            receiver_id=receiver_id,
            content=content,
            product_id=product_id,
            timestamp=utcnow(),
            read=False,
        )
        key = conversation_key(user_id, receiver_id)
        try:
            await self._client.table("messages").insert({**message.model_dump(), "conversation_key": key})
        except MarketError as e:
            logger.error("Error sending message: %s", e.message)
            self._notifier.error("Failed to send message")
            return None

        bucket = [m for m in self.messages.get(key, []) if m.id != message.id]
        self._set_messages({**self.messages, key: bucket + [message]})
        return message

    async def mark_as_read(self, other_user_id: str) -> None:
        user_id = self._session.user_id
        if not user_id:
            return
        key = conversation_key(user_id, other_user_id)
        existing = self.messages.get(key, [])
        if not any(m.sender_id == other_user_id and not m.read for m in existing):
            return
        self._set_messages({
            **self.messages,
            key: [m.model_copy(update={"read": True}) if m.sender_id == other_user_id and not m.read else m
                  for m in existing],
        })
        try:
            await self._client.table("messages").update(
                {"read": True},
                eq={"conversation_key": key, "sender_id": other_user_id, "read": False},
            )
        except MarketError as e:
            # Local state is already flipped; the next fetch reconciles it
            logger.error("Error marking conversation %s as read: %s", key, e.message)
