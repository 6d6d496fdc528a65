from __future__ import annotations

import argparse
import asyncio
import base64
import logging
import mimetypes
import os
import sys
from pathlib import Path
from typing import Dict, Optional

from sealchat.client.gateway import GatewayClient, RequestFailed
from sealchat.client.reconciler import ChatState, identity_of
from sealchat.core.proto import Message, UserSummary

log = logging.getLogger("sealchat.cmd.client")

TOKEN_ENV = "SEALCHAT_TOKEN"


class ClientApp:
    def __init__(self, server_url: str, token: str) -> None:
        self.gateway = GatewayClient(server_url, token)
        self.state: Optional[ChatState] = None
        self.directory: Dict[str, UserSummary] = {}
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        me = await self.gateway.connect()
        self.state = ChatState(me.user_id, self.gateway.feed, on_append=self._render)
        watcher = asyncio.create_task(self._watch_connection())
        try:
            await self._cmd_users()
            await self._command_loop()
        finally:
            self.stop_event.set()
            watcher.cancel()
            self.state.close()
            await self.gateway.close()

    async def _watch_connection(self) -> None:
        await self.gateway.closed.wait()
        if not self.stop_event.is_set():
            print("Disconnected from server.")
            self.stop_event.set()

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("sealchat ready. Commands: /users, /open <user>, /img <path>, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                if line.startswith("/"):
                    await self._handle_command(line)
                else:
                    await self._cmd_send(text=line)
            except RequestFailed as exc:
                print(f"ERROR ({exc.code}): {exc.detail}")

    async def _handle_command(self, line: str) -> None:
        parts = line.split(maxsplit=1)
        cmd = parts[0]
        if cmd == "/users":
            await self._cmd_users()
        elif cmd == "/open" and len(parts) == 2:
            await self._cmd_open(parts[1].strip())
        elif cmd == "/img" and len(parts) == 2:
            await self._cmd_image(Path(parts[1].strip()).expanduser())
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    async def _cmd_users(self) -> None:
        users = await self.gateway.list_users()
        self.directory = {u.user_id: u for u in users}
        for user in users:
            print(f"  {user.user_id:<16} {user.display_name}")

    async def _cmd_open(self, user_id: str) -> None:
        if user_id not in self.directory:
            print("Unknown user. Run /users first.")
            return
        assert self.state is not None
        # load_history does not go through on_append
        if await self.state.open_conversation(user_id, self.gateway.fetch_history):
            print(f"--- conversation with {self.directory[user_id].display_name} ---")
            for message in self.state.messages:
                self._render(message)

    async def _cmd_send(self, text: Optional[str] = None, image: Optional[str] = None) -> None:
        assert self.state is not None
        if self.state.selected is None:
            print("No conversation open. Use /open <user>.")
            return
        message = await self.gateway.send_message(self.state.selected, text=text, image=image)
        self.state.append_local(message)

    async def _cmd_image(self, path: Path) -> None:
        if not path.exists():
            print(f"File not found: {path}")
            return
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        data_url = f"data:{mime};base64,{base64.b64encode(path.read_bytes()).decode('ascii')}"
        await self._cmd_send(image=data_url)

    def _render(self, message: Message) -> None:
        sender = identity_of(message.sender_id)
        who = "me" if self.state and sender == self.state.me else sender
        if message.undecryptable:
            body = "<message could not be decrypted>"
        else:
            body = message.text or ""
        if message.image:
            body = f"{body} [image: {message.image}]".strip()
        print(f"[{who}] {body}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="sealchat client")
    parser.add_argument("--server", required=True, help="ws://host:port of the sealchat server")
    parser.add_argument("--token", default=None, help=f"Session token (default: ${TOKEN_ENV})")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    token = args.token or os.getenv(TOKEN_ENV)
    if not token:
        parser.error(f"a session token is required (--token or ${TOKEN_ENV})")

    app = ClientApp(args.server, token)
    try:
        await app.run()
    except RequestFailed as exc:
        print(f"ERROR ({exc.code}): {exc.detail}")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
