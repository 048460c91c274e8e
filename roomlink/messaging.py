"""Chat messages and file transfers over established data channels.

Outgoing messages go to every peer whose connection is established. Incoming
data channel messages are parsed here and surfaced through callbacks.

File transfer flow (per recipient)::

    FILE_META::{transfer_id}::{file_size}::{chunk_count}::{filename}
    FILE_CHUNK::{transfer_id}::{chunk_index}::{chunk_data_base64}   (repeated)
    FILE_COMPLETE::{transfer_id}
"""

import asyncio
import base64
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from roomlink.protocol import (
    MSG_CHAT,
    MSG_FILE_CHUNK,
    MSG_FILE_COMPLETE,
    MSG_FILE_META,
    MSG_SEPARATOR,
    format_message,
    parse_message,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024  # 64 KB

# Argument splits per message type; the last argument may contain "::"
_MAXSPLIT = {MSG_CHAT: 0, MSG_FILE_META: 3}


@dataclass
class Message:
    """A chat message, sent or received."""

    id: str
    peer_id: str
    peer_name: str
    content: str
    timestamp: float
    is_local: bool = False


@dataclass
class FileTransfer:
    """A file sent to or received from peers."""

    id: str
    name: str
    size: int
    peer_id: str
    peer_name: str
    is_local: bool = False
    data: bytes = b""
    complete: bool = False


@dataclass
class _IncomingFile:
    transfer: FileTransfer
    chunk_count: int
    chunks: Dict[int, bytes] = field(default_factory=dict)


class Messenger:
    """Sends and receives application messages for one session.

    Args:
        local_identity: Local peer id, used as sender id.
        local_display_name: Local display name.
        recipients: Callable returning ``(peer_id, display_name, handle)`` for
            every established peer.
        on_message: Called with each received ``Message``.
        on_file_transfer: Called with each completed incoming ``FileTransfer``.
    """

    def __init__(
        self,
        local_identity: str,
        local_display_name: str,
        recipients: Callable[[], Iterable[Tuple[str, str, Any]]],
        on_message: Optional[Callable[[Message], Any]] = None,
        on_file_transfer: Optional[Callable[[FileTransfer], Any]] = None,
    ):
        self.local_identity = local_identity
        self.local_display_name = local_display_name
        self.recipients = recipients
        self.on_message = on_message
        self.on_file_transfer = on_file_transfer
        self.messages: List[Message] = []
        self.file_transfers: List[FileTransfer] = []
        self._incoming: Dict[Tuple[str, str], _IncomingFile] = {}

    def _send_all(self, payload: str) -> int:
        sent = 0
        for peer_id, _, handle in self.recipients():
            try:
                if handle.send_data(payload):
                    sent += 1
                else:
                    logger.debug(f"Data channel to {peer_id} is not open")
            except Exception as e:
                logger.error(f"Failed to send to {peer_id}: {e}")
        return sent

    def send_message(self, content: str) -> Message:
        """Send a chat message to every established peer."""
        message = Message(
            id=uuid.uuid4().hex,
            peer_id=self.local_identity,
            peer_name=self.local_display_name,
            content=content,
            timestamp=time.time(),
            is_local=True,
        )
        payload = format_message(
            MSG_CHAT,
            json.dumps(
                {
                    "id": message.id,
                    "peer_id": message.peer_id,
                    "peer_name": message.peer_name,
                    "content": message.content,
                    "timestamp": message.timestamp,
                }
            ),
        )
        sent = self._send_all(payload)
        self.messages.append(message)
        logger.info(f"Sent message to {sent} peer(s)")
        return message

    async def send_file(self, file_path: str) -> FileTransfer:
        """Send a file to every established peer.

        Raises:
            FileNotFoundError: If ``file_path`` does not exist.
        """
        path = Path(file_path)
        data = path.read_bytes()
        transfer = FileTransfer(
            id=uuid.uuid4().hex,
            name=path.name,
            size=len(data),
            peer_id=self.local_identity,
            peer_name=self.local_display_name,
            is_local=True,
            data=data,
        )
        chunks = [data[i : i + CHUNK_SIZE] for i in range(0, len(data), CHUNK_SIZE)]

        logger.info(f"Sending file: {transfer.name} ({transfer.size} bytes)")
        self._send_all(
            format_message(
                MSG_FILE_META, transfer.id, transfer.size, len(chunks), transfer.name
            )
        )
        for index, chunk in enumerate(chunks):
            self._send_all(
                format_message(
                    MSG_FILE_CHUNK,
                    transfer.id,
                    index,
                    base64.b64encode(chunk).decode("ascii"),
                )
            )
            # Let the data channels drain between chunks
            await asyncio.sleep(0)
        self._send_all(format_message(MSG_FILE_COMPLETE, transfer.id))

        transfer.complete = True
        self.file_transfers.append(transfer)
        return transfer

    def handle_data(self, peer_id: str, data: Any, peer_name: str = ""):
        """Handle one data channel message from ``peer_id``."""
        if isinstance(data, bytes):
            logger.debug(f"Ignoring binary message from {peer_id}")
            return

        msg_type, _, _ = data.partition(MSG_SEPARATOR)
        msg_type, args = parse_message(data, maxsplit=_MAXSPLIT.get(msg_type, -1))
        try:
            if msg_type == MSG_CHAT:
                self._on_chat(peer_id, peer_name, args[0])
            elif msg_type == MSG_FILE_META:
                self._on_file_meta(peer_id, peer_name, *args)
            elif msg_type == MSG_FILE_CHUNK:
                transfer_id, index, chunk = args
                incoming = self._incoming.get((peer_id, transfer_id))
                if incoming is None:
                    logger.warning(f"Chunk for unknown transfer {transfer_id}")
                    return
                index = int(index)
                if not 0 <= index < incoming.chunk_count:
                    raise ValueError(f"chunk index {index} out of range")
                incoming.chunks[index] = base64.b64decode(chunk)
            elif msg_type == MSG_FILE_COMPLETE:
                self._on_file_complete(peer_id, args[0])
            else:
                logger.debug(f"Unknown data channel message type: {msg_type}")
        except (ValueError, TypeError, IndexError, KeyError) as e:
            logger.error(f"Malformed {msg_type} message from {peer_id}: {e}")

    def forget_peers(self, keep: Iterable[str]):
        """Discard unfinished incoming transfers from peers not in ``keep``."""
        keep = set(keep)
        for key in [key for key in self._incoming if key[0] not in keep]:
            incoming = self._incoming.pop(key)
            logger.info(
                f"Discarding unfinished file {incoming.transfer.name} from {key[0]}"
            )

    def _on_chat(self, peer_id: str, peer_name: str, raw: str):
        body = json.loads(raw)
        if not isinstance(body, dict):
            raise ValueError(f"expected a JSON object, got {type(body).__name__}")
        message = Message(
            id=body.get("id") or uuid.uuid4().hex,
            peer_id=peer_id,
            peer_name=body.get("peer_name") or peer_name,
            content=str(body["content"]),
            timestamp=float(body.get("timestamp") or time.time()),
        )
        self.messages.append(message)
        logger.info(f"New message from: {message.peer_name}")
        if self.on_message:
            self.on_message(message)

    def _on_file_meta(
        self, peer_id: str, peer_name: str, transfer_id, size, chunk_count, name
    ):
        size, chunk_count = int(size), int(chunk_count)
        if size < 0 or chunk_count != -(-size // CHUNK_SIZE):
            raise ValueError(f"{chunk_count} chunk(s) for {size} bytes")
        self._incoming[(peer_id, transfer_id)] = _IncomingFile(
            transfer=FileTransfer(
                id=transfer_id,
                name=name,
                size=size,
                peer_id=peer_id,
                peer_name=peer_name,
            ),
            chunk_count=chunk_count,
        )
        logger.info(f"Receiving file {name} from {peer_name or peer_id}")

    def _on_file_complete(self, peer_id: str, transfer_id: str):
        incoming = self._incoming.pop((peer_id, transfer_id), None)
        if incoming is None:
            logger.warning(f"Completion for unknown transfer {transfer_id}")
            return
        missing = incoming.chunk_count - len(incoming.chunks)
        if missing:
            logger.error(
                f"File {incoming.transfer.name} from {peer_id} is missing "
                f"{missing} chunk(s)"
            )
            return

        transfer = incoming.transfer
        transfer.data = b"".join(incoming.chunks[i] for i in range(incoming.chunk_count))
        transfer.complete = True
        if len(transfer.data) != transfer.size:
            logger.warning(
                f"File {transfer.name} size mismatch: expected {transfer.size}, "
                f"got {len(transfer.data)}"
            )
        self.file_transfers.append(transfer)
        logger.info(f"New file transfer: {transfer.name}")
        if self.on_file_transfer:
            self.on_file_transfer(transfer)
