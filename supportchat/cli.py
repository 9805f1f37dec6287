import argparse
import asyncio
import logging

from supportchat.api import SupportApi
from supportchat.attachments import resolve_attachment_url
from supportchat.channel import EVENT_NEW_MESSAGE, EventChannel, NewMessageEvent, WebSocketTransport
from supportchat.config import API_URL, BASE_URL, SOCKET_URL, get_config_dict
from supportchat.db.database import close_db, get_db
from supportchat.db.models import Message
from supportchat.errors import SupportChatError
from supportchat.identity import resolve_identity
from supportchat.session import ChatSession

logger = logging.getLogger("supportchat")


def _format(msg: Message) -> str:
    text = msg.content or ""
    if msg.attachment:
        text = f"{text} [{msg.attachment.name or 'attachment'}: {resolve_attachment_url(BASE_URL, msg.attachment.path)}]".strip()
    return f"[{msg.created_at:%H:%M:%S}] {msg.sender_name or msg.sender_type}: {text}"


async def run(args: argparse.Namespace) -> None:
    logger.debug(f"Config: {get_config_dict()}")
    db = await get_db() if not args.token else None
    identity = await resolve_identity(db, token=args.token, principal_id=args.user_id,
                                      display_name=args.name, role=args.role)
    transport = WebSocketTransport(args.socket_url, headers=identity.auth_headers())
    channel = EventChannel(transport)
    api = SupportApi(identity, args.api_url)
    session = ChatSession(api, channel, profile_db=db)
    try:
        if args.chat:
            await session.open_chat(args.chat)
        else:
            await session.create_chat(args.category)
        print(f"Chat {session.chat_id} ({session.chat.status if session.chat else 'unknown'})")
        printed = set()
        for msg in session.messages:
            printed.add(msg.id)
            print(_format(msg))

        def _print_new(event: NewMessageEvent) -> None:
            if event.chat_id == session.chat_id and event.id not in printed:
                printed.add(event.id)
                print(_format(event.to_message()))

        channel.on(EVENT_NEW_MESSAGE, _print_new)
        if args.send:
            await session.send_message(args.send)
        # wait until interrupted
        await asyncio.Event().wait()
    finally:
        await session.close_view()
        await channel.close()
        await api.aclose()
        if db is not None:
            await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Follow a support chat from the terminal")
    parser.add_argument("--api-url", default=API_URL, help="REST base URL")
    parser.add_argument("--socket-url", default=SOCKET_URL, help="Push channel URL")
    parser.add_argument("--token", default=None, help="Bearer token; omit to chat as a guest")
    parser.add_argument("--user-id", default=None, help="Principal id for --token")
    parser.add_argument("--role", choices=["user", "agent"], default="user")
    parser.add_argument("--name", default=None, help="Display name")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--chat", help="Open an existing chat id")
    target.add_argument("--category", help="Create a new chat in this category")
    parser.add_argument("--send", default=None, help="Send one message after opening")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass
    except SupportChatError as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
