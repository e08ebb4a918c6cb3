from __future__ import annotations

import logging
import queue
import sys
import threading
from typing import Optional, Tuple

from .config import Settings
from .errors import ConnectFailed, ConnectionClosed, IllegalTransition, SessionError, TransportUnavailable
from .game.phases import stage_of
from .net.directory import RemoteDirectory, normalize_code
from .net.transport import TcpEndpoint
from .session.coordinator import SessionCoordinator
from .session.replica import HOST_LEFT, ClientReplica, ReplicaView

logger = logging.getLogger(__name__)

HOST_HELP = """commands:
  list            show active and waiting participants
  promote ID      move a waiting participant to the active list
  demote ID       move an active participant to the waiting list
  start           deal roles and start the game (active list must be full)
  next            advance to the next phase
  kill ID         mark a seated participant as eliminated
  quit            end the session for everyone"""


class LineReader:
    """Reads stdin on a background thread so the caller never blocks on input."""

    def __init__(self) -> None:
        self.lines: "queue.Queue[Optional[str]]" = queue.Queue()
        threading.Thread(target=self._loop, daemon=True).start()

    def _loop(self) -> None:
        for line in sys.stdin:
            self.lines.put(line.strip())
        self.lines.put(None)

    def try_get(self) -> Tuple[bool, Optional[str]]:
        try:
            return True, self.lines.get_nowait()
        except queue.Empty:
            return False, None


def _print_roster(coordinator: SessionCoordinator) -> None:
    roster = coordinator.roster
    game = coordinator.game_state
    print(f"[{coordinator.code}] phase={game.phase} day={game.day}"
          + (f" winner={game.winner}" if game.winner else ""))
    print(f"  active ({len(roster.active)}/{coordinator.capacity}):")
    for p in roster.active:
        seat = f"#{p.index} " if p.index else ""
        dead = "" if p.alive is not False else " (eliminated)"
        role = f" [{p.role}]" if p.role else ""
        print(f"    {seat}{p.name} id={p.id}{role}{dead}")
    print(f"  waiting ({len(roster.waiting)}):")
    for p in roster.waiting:
        print(f"    {p.name} id={p.id}")


def _host_command(coordinator: SessionCoordinator, line: str) -> bool:
    parts = line.split()
    if not parts:
        return True
    cmd, args = parts[0].lower(), parts[1:]
    try:
        if cmd == "list":
            _print_roster(coordinator)
        elif cmd == "promote" and args:
            coordinator.move_to_active(args[0])
        elif cmd == "demote" and args:
            coordinator.move_to_waiting(args[0])
        elif cmd == "start":
            coordinator.start_game()
        elif cmd == "next":
            coordinator.advance_phase()
        elif cmd == "kill" and args:
            coordinator.eliminate(args[0])
        elif cmd in ("quit", "exit"):
            return False
        else:
            print(HOST_HELP)
    except IllegalTransition as exc:
        print(f"Refused: {exc}")
    return True


def run_host_console(settings: Settings, code: Optional[str], bind: str, port: int) -> int:
    directory = RemoteDirectory(settings.directory)
    coordinator = SessionCoordinator(
        lambda wanted: TcpEndpoint.open(directory, wanted, bind=bind, port=port),
        capacity=settings.capacity,
    )
    try:
        session_code = coordinator.host(normalize_code(code) if code else None)
    except (TransportUnavailable, ValueError) as exc:
        print(f"Could not host: {exc}")
        directory.close()
        return 1

    print(f"Session code: {session_code}  (type 'help' for commands)")
    coordinator.subscribe(_print_roster)
    reader = LineReader()
    try:
        while True:
            coordinator.pump(timeout=0.1)
            got, line = reader.try_get()
            if not got:
                continue
            if line is None or not _host_command(coordinator, line):
                break
    except KeyboardInterrupt:
        pass
    finally:
        coordinator.leave()
        directory.close()
    return 0


def _print_view(view: ReplicaView) -> None:
    if not view.synced:
        return
    me = view.player
    game = view.game
    print(f"phase={game.phase} ({stage_of(game.phase)}) day={game.day}"
          + (f" winner={game.winner}" if game.winner else ""))
    line = f"you: {me.name} [{me.status}]"
    if me.index:
        line += f" seat #{me.index}"
    if me.role:
        line += f" role={me.role}"
    if me.alive is False:
        line += " (eliminated)"
    print(line)
    for p in view.players:
        seat = f"#{p.index} " if p.index else ""
        print(f"  {seat}{p.name} [{p.status}]" + (" (eliminated)" if p.alive is False else ""))


def run_client_console(settings: Settings, code: str, name: str) -> int:
    directory = RemoteDirectory(settings.directory)
    replica = ClientReplica(lambda _wanted: TcpEndpoint.open(directory, listen=False))
    replica.subscribe(_print_view)
    replica.on_terminated(
        lambda reason: print("The host ended the session." if reason == HOST_LEFT else "Disconnected from the host.")
    )
    try:
        print(f"Connecting to {code} ...")
        replica.join(normalize_code(code), name, timeout=settings.connect_timeout)
    except (ConnectFailed, ConnectionClosed, TransportUnavailable, ValueError) as exc:
        print(f"Could not join: {exc}")
        directory.close()
        return 1

    try:
        while replica.endpoint is not None:
            replica.pump(timeout=0.1)
    except KeyboardInterrupt:
        replica.leave()
    except SessionError as exc:
        logger.error("Session failed: %s", exc)
        replica.leave()
    finally:
        directory.close()
    return 0
