"""
Beamshare terminal client.

    beamshare send CODE FILE [FILE ...]
    beamshare receive CODE [--out DIR]

The sender waits for the receiver to join, sends each file in turn and
exits once every transfer has finished. The receiver writes each delivered
file to the output directory.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from config import LOG_LEVEL, SIGNALING_URL
from errors import TransferError
from transfer.models import TransferState
from transfer.session import PeerSession, SessionEvent

logger = logging.getLogger("beamshare")


async def _send(session: PeerSession, code: str, files: list[Path]) -> int:
    channel_open = asyncio.Event()
    finished: asyncio.Queue = asyncio.Queue()
    connection_failed = asyncio.Event()

    async def on_event(event: str, data: dict) -> None:
        if event == SessionEvent.DATA_CHANNEL_OPEN:
            channel_open.set()
        elif event == SessionEvent.CONNECTION_ERROR:
            logger.error(f"Connection failed: {data['reason']}")
            connection_failed.set()
            channel_open.set()
        elif event == SessionEvent.PROGRESS_UPDATE:
            logger.info(f"{data['transfer_id'][:8]}: {data['percent']:.1f}%")
        elif event == SessionEvent.TRANSFER_STATE and data["state"] in (
            TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELLED,
        ):
            await finished.put(data)

    session.on_event(on_event)
    await session.initiate_as_sender(code)
    logger.info(f"Share this code with the receiver: {code}")
    await channel_open.wait()
    if connection_failed.is_set():
        return 1

    failures = 0
    for path in files:
        try:
            transfer_id = await session.send_file(path)
        except TransferError as e:
            failures += 1
            logger.error(f"{path}: {e}")
            continue
        while True:
            result = await finished.get()
            if result["transfer_id"] == transfer_id:
                break
            # A transfer that failed inside send_file still reports its state.
            logger.debug(f"Skipping result for earlier transfer {result['transfer_id'][:8]}")
        if result["state"] != TransferState.COMPLETED:
            failures += 1
            logger.error(f"{result['file_name']}: {result['state']} ({result['error_message']})")
    return 1 if failures else 0


async def _receive(session: PeerSession, code: str, out_dir: Path) -> int:
    done = asyncio.Event()
    exit_code = 0
    out_dir.mkdir(parents=True, exist_ok=True)

    async def on_event(event: str, data: dict) -> None:
        nonlocal exit_code
        if event == SessionEvent.FILE_RECEIVED:
            target = out_dir / Path(data["name"]).name
            await asyncio.to_thread(target.write_bytes, data["data"])
            logger.info(f"Saved {target} ({data['size']} bytes)")
        elif event == SessionEvent.PROGRESS_UPDATE:
            logger.info(f"{data['transfer_id'][:8]}: {data['percent']:.1f}%")
        elif event == SessionEvent.TRANSFER_ERROR:
            logger.error(f"Transfer {data['transfer_id'][:8]} failed: {data['reason']}")
            exit_code = 1
        elif event == SessionEvent.CONNECTION_STATE_CHANGED and data["state"] in ("failed", "closed"):
            if data["state"] == "failed":
                exit_code = 1
            done.set()

    session.on_event(on_event)
    await session.initiate_as_receiver(code)
    logger.info(f"Joined room {code}, waiting for files (Ctrl+C to stop)")
    await done.wait()
    return exit_code


async def _main(args: argparse.Namespace) -> int:
    session = PeerSession(signaling_url=args.signaling_url)
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    try:
        loop.add_signal_handler(signal.SIGINT, main_task.cancel)
    except NotImplementedError:
        pass  # Windows

    try:
        if args.command == "send":
            return await _send(session, args.code, [Path(p) for p in args.files])
        return await _receive(session, args.code, Path(args.out))
    except asyncio.CancelledError:
        logger.info("Interrupted")
        return 130
    finally:
        await session.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(prog="beamshare", description="Peer-to-peer file transfer")
    parser.add_argument("--signaling-url", default=SIGNALING_URL)
    sub = parser.add_subparsers(dest="command", required=True)

    send = sub.add_parser("send", help="send files to the peer in a room")
    send.add_argument("code")
    send.add_argument("files", nargs="+")

    receive = sub.add_parser("receive", help="receive files from the peer in a room")
    receive.add_argument("code")
    receive.add_argument("--out", default=".")

    args = parser.parse_args()

    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(_main(args)))


if __name__ == "__main__":
    main()
