import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import NotFound, StoreError
from chat_core.domain.models import ConversationSummary, Message


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _from_iso(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """本地文件实现的会话存储，离线调试与测试用。

    目录结构：<root>/conversations/<id>/meta.json + messages.jsonl
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    # ---- 写入辅助（远端服务在首次交换时完成这些动作） ----

    def create_conversation(self, title: str = "") -> ConversationSummary:
        cid = f"c-{uuid4().hex}"
        cdir = self._conv_root / cid
        cdir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        conv = ConversationSummary(id=cid, title=title, updated_at=now, message_count=0, created_at=now)
        self._write_meta(cdir, conv)
        return conv

    def add_message(self, message: Message) -> None:
        cdir = self._conv_root / message.conversation_id
        if not cdir.exists():
            raise NotFound(code="CONVERSATION_NOT_FOUND", message=message.conversation_id)
        payload = {
            "id": message.id,
            "conversation_id": message.conversation_id,
            "role": message.role,
            "content": message.content,
            "created_at": _iso(message.created_at),
            "meta": message.meta,
        }
        try:
            with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False) + "\n")
            conv = self._read_meta(message.conversation_id)
            conv.updated_at = datetime.now(timezone.utc)
            conv.message_count += 1
            self._write_meta(cdir, conv)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))

    # ---- ConversationStore ----

    async def list(self) -> List[ConversationSummary]:
        items: List[ConversationSummary] = []
        for cdir in self._conv_root.iterdir():
            if not (cdir / "meta.json").exists():
                continue
            try:
                items.append(self._read_meta(cdir.name))
            except StoreError:
                continue
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    async def get_history(self, conversation_id: str) -> List[Message]:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise NotFound(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        msgs_path = cdir / "messages.jsonl"
        items: List[Message] = []
        if not msgs_path.exists():
            return items
        for line in msgs_path.read_text(encoding="utf-8").splitlines():
            try:
                items.append(self._to_message(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError):
                continue
        items.sort(key=lambda m: m.created_at)
        return items

    async def delete(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise NotFound(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e))

    async def rename(self, conversation_id: str, title: str) -> None:
        """更新会话标题。"""
        conv = self._read_meta(conversation_id)
        conv.title = title
        conv.updated_at = datetime.now(timezone.utc)
        self._write_meta(self._conv_root / conversation_id, conv)

    # ---- 内部 ----

    def _read_meta(self, conversation_id: str) -> ConversationSummary:
        meta_path = self._conv_root / conversation_id / "meta.json"
        if not meta_path.exists():
            raise NotFound(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            return ConversationSummary(
                id=data["id"],
                title=data.get("title") or "",
                updated_at=_from_iso(data["updated_at"]),
                message_count=int(data.get("message_count", 0)),
                created_at=_from_iso(data["created_at"]) if data.get("created_at") else None,
            )
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))

    def _write_meta(self, cdir: Path, conv: ConversationSummary) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj: Dict[str, Any] = {
            "id": conv.id,
            "title": conv.title,
            "updated_at": _iso(conv.updated_at),
            "message_count": conv.message_count,
            "created_at": _iso(conv.created_at) if conv.created_at else None,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        return Message(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data.get("content") or "",
            created_at=_from_iso(data["created_at"]),
            meta=data.get("meta") or {},
        )
