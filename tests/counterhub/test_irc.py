from __future__ import annotations

from counterhub.services.irc import badges_from_tags, chat_message_from_line, parse_irc_line


def test_parse_privmsg_with_tags() -> None:
    line = parse_irc_line(
        "@badge-info=;badges=moderator/1,subscriber/12;display-name=Mod\\sGuy;mod=1;user-id=42 "
        ":modguy!modguy@modguy.tmi.twitch.tv PRIVMSG #ghostrunner :!d+ 2\r\n"
    )
    assert line.command == "PRIVMSG"
    assert line.params == ["#ghostrunner", "!d+ 2"]
    assert line.nick == "modguy"
    assert line.tags["display-name"] == "Mod Guy"

    message = chat_message_from_line(line)
    assert message.user_id == "42"
    assert message.username == "Mod Guy"
    assert message.text == "!d+ 2"
    assert message.is_moderator
    assert message.is_subscriber
    assert not message.is_broadcaster


def test_parse_ping_and_numeric() -> None:
    ping = parse_irc_line("PING :tmi.twitch.tv")
    assert ping.command == "PING"
    assert ping.trailing == "tmi.twitch.tv"

    welcome = parse_irc_line(":tmi.twitch.tv 001 counterbot :Welcome, GLHF!")
    assert welcome.command == "001"
    assert welcome.prefix == "tmi.twitch.tv"
    assert chat_message_from_line(welcome) is None


def test_badges_from_flags() -> None:
    assert badges_from_tags({"badges": "broadcaster/1"}) == frozenset({"broadcaster"})
    assert badges_from_tags({"badges": "", "subscriber": "1"}) == frozenset({"subscriber"})
    assert badges_from_tags({}) == frozenset()
