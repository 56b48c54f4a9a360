"""PairShare 명령줄 클라이언트.

룸에 입장하여 상대방과 P2P 연결을 맺고, 선택적으로 화면을 공유합니다.
표준 입력으로 입력한 줄은 채팅 메시지로 전송됩니다.

Usage:
    python share_client.py --room X7Q2 --name Alice
    python share_client.py --server ws://host:8000/ws --room X7Q2 --name Bob --share
"""

import argparse
import asyncio
import logging
import sys

from aiortc.contrib.media import MediaBlackhole

from pairshare import PairShareClient, PairShareError, RelayChannel, ReconnectBackoff
from pairshare.config import settings
from pairshare.webrtc import ScreenCapture, SessionState

logger = logging.getLogger("share_client")


async def run(args: argparse.Namespace) -> None:
    channel = RelayChannel(
        args.server,
        backoff=ReconnectBackoff(
            max_attempts=settings.RECONNECT_ATTEMPTS,
            initial_delay=settings.RECONNECT_INITIAL_DELAY,
            factor=settings.RECONNECT_BACKOFF_FACTOR,
        ),
    )
    done = asyncio.Event()
    sink = MediaBlackhole()
    client: PairShareClient

    def on_state_change(state: SessionState) -> None:
        print(f"* connection: {state.value}")
        if state == SessionState.CONNECTED and args.share and not client.is_sharing:
            asyncio.ensure_future(share())

    def on_remote_track(track) -> None:
        print(f"* receiving {track.kind} track")
        sink.addTrack(track)
        asyncio.ensure_future(sink.start())

    def on_chat_message(message: dict) -> None:
        print(f"[{message.get('displayName')}] {message.get('text')}")

    def on_terminal_notice(notice: str) -> None:
        print(f"! {notice}")
        done.set()

    async def share() -> None:
        try:
            await client.start_share()
        except PairShareError as e:
            print(f"! screen share failed: {e}")

    client = PairShareClient(
        channel,
        args.room,
        args.name,
        capture=ScreenCapture(device=args.device, format=args.format) if args.share else None,
        on_state_change=on_state_change,
        on_remote_track=on_remote_track,
        on_chat_message=on_chat_message,
        on_members_changed=lambda members: print(f"* members: {[m.get('displayName') for m in members]}"),
        on_peer_screen_share=lambda sharing: print(f"* peer screen share: {'on' if sharing else 'off'}"),
        on_error=lambda error: print(f"! {type(error).__name__}: {error}"),
        on_terminal_notice=on_terminal_notice,
    )

    await client.start()

    loop = asyncio.get_running_loop()

    async def read_chat() -> None:
        while not done.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            try:
                await client.send_chat(line)
            except PairShareError as e:
                print(f"! {e}")

    reader = asyncio.ensure_future(read_chat())
    try:
        await done.wait()
    finally:
        reader.cancel()
        await client.leave()
        await sink.stop()


def main():
    parser = argparse.ArgumentParser(description="PairShare screen sharing client")
    parser.add_argument("--server", default=settings.SIGNALING_SERVER_URL, help="Relay server WebSocket URL")
    parser.add_argument("--room", required=True, help="Room ID")
    parser.add_argument("--name", default="Anonymous", help="Display name")
    parser.add_argument("--share", action="store_true", help="Share this screen once connected")
    parser.add_argument("--device", default=None, help="ffmpeg capture device (default: platform)")
    parser.add_argument("--format", default=None, help="ffmpeg capture format (default: platform)")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Log level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("사용자 중단")


if __name__ == "__main__":
    main()
