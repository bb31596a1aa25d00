from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass, field
from typing import Optional

from counterhub.models import BotCredentials
from counterhub.services.bot_sessions import ChatTransportError
from counterhub.services.chat_commands import ChatMessage

logger = logging.getLogger("counterhub.irc")

_TAG_ESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


@dataclass(frozen=True)
class IrcLine:
    command: str
    params: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    prefix: Optional[str] = None

    @property
    def trailing(self) -> str:
        return self.params[-1] if self.params else ""

    @property
    def nick(self) -> str:
        if not self.prefix:
            return ""
        return self.prefix.split("!", 1)[0]


def _unescape_tag(value: str) -> str:
    output = []
    index = 0
    while index < len(value):
        char = value[index]
        if char == "\\" and index + 1 < len(value):
            output.append(_TAG_ESCAPES.get(value[index + 1], value[index + 1]))
            index += 2
            continue
        output.append(char)
        index += 1
    return "".join(output)


def parse_irc_line(line: str) -> IrcLine:
    rest = line.rstrip("\r\n")
    tags: dict[str, str] = {}
    prefix = None
    if rest.startswith("@"):
        raw_tags, _, rest = rest[1:].partition(" ")
        for item in raw_tags.split(";"):
            key, _, value = item.partition("=")
            tags[key] = _unescape_tag(value)
    if rest.startswith(":"):
        prefix, _, rest = rest[1:].partition(" ")
    trailing = None
    if " :" in rest:
        rest, _, trailing = rest.partition(" :")
    elif rest.startswith(":"):
        trailing = rest[1:]
        rest = ""
    words = rest.split()
    command = words[0].upper() if words else ""
    params = words[1:]
    if trailing is not None:
        params.append(trailing)
    return IrcLine(command=command, params=params, tags=tags, prefix=prefix)


def badges_from_tags(tags: dict[str, str]) -> frozenset[str]:
    badges = {
        item.split("/", 1)[0] for item in tags.get("badges", "").split(",") if item
    }
    if tags.get("mod") == "1":
        badges.add("moderator")
    if tags.get("subscriber") == "1":
        badges.add("subscriber")
    return frozenset(badges)


def chat_message_from_line(line: IrcLine) -> Optional[ChatMessage]:
    if line.command != "PRIVMSG" or len(line.params) < 2:
        return None
    username = line.tags.get("display-name") or line.nick
    return ChatMessage(
        user_id=line.tags.get("user-id") or line.nick,
        username=username,
        text=line.trailing,
        badges=badges_from_tags(line.tags),
    )


class TwitchIrcTransport:
    """Twitch chat over IRC with the tags and commands capabilities."""

    def __init__(
        self,
        credentials: BotCredentials,
        host: str = "irc.chat.twitch.tv",
        port: int = 6697,
        use_tls: bool = True,
    ) -> None:
        self.credentials = credentials
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def channel(self) -> str:
        return f"#{self.credentials.channel}"

    async def connect(self) -> None:
        ssl_context = ssl.create_default_context() if self.use_tls else None
        self._reader, self._writer = await asyncio.open_connection(
            self.host, self.port, ssl=ssl_context
        )
        token = self.credentials.access_token
        if not token.startswith("oauth:"):
            token = f"oauth:{token}"
        await self._send_raw("CAP REQ :twitch.tv/tags twitch.tv/commands")
        await self._send_raw(f"PASS {token}")
        await self._send_raw(f"NICK {self.credentials.bot_username}")
        while True:
            line = await self._read_line()
            if line is None:
                raise ChatTransportError("connection closed during login")
            if line.command == "001":
                break
            if line.command == "NOTICE" and "authentication failed" in line.trailing.lower():
                raise ChatTransportError("chat login rejected")
            if line.command == "PING":
                await self._send_raw(f"PONG :{line.trailing}")
        await self._send_raw(f"JOIN {self.channel}")
        logger.info("irc_connected channel=%s", self.channel)

    async def read_message(self) -> Optional[ChatMessage]:
        while True:
            line = await self._read_line()
            if line is None:
                return None
            if line.command == "PING":
                await self._send_raw(f"PONG :{line.trailing}")
                continue
            if line.command == "RECONNECT":
                raise ChatTransportError("server requested reconnect")
            message = chat_message_from_line(line)
            if message is not None:
                return message

    async def send(self, text: str) -> None:
        cleaned = " ".join(text.splitlines())
        await self._send_raw(f"PRIVMSG {self.channel} :{cleaned}")

    async def close(self) -> None:
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as exc:
            logger.debug("irc_close_failed error=%s", exc)

    async def _read_line(self) -> Optional[IrcLine]:
        if self._reader is None:
            raise ChatTransportError("transport not connected")
        raw = await self._reader.readline()
        if not raw:
            return None
        return parse_irc_line(raw.decode("utf-8", errors="replace"))

    async def _send_raw(self, line: str) -> None:
        if self._writer is None:
            raise ChatTransportError("transport not connected")
        self._writer.write(f"{line}\r\n".encode("utf-8"))
        await self._writer.drain()


def twitch_transport_factory(host: str, port: int):
    def factory(credentials: BotCredentials) -> TwitchIrcTransport:
        return TwitchIrcTransport(credentials, host=host, port=port, use_tls=port == 6697)

    return factory
