#!/usr/bin/env python3
"""
WebSocket relay with history replay.

Broadcasts every message from any client to all clients, the sender included,
and replays the full message history to each client that joins later.
All history appends and fan-outs go through one dispatcher task, so every
client sees the same conversation in the same order.

Usage: python3 relay.py [port] [--host HOST] [--log-level LEVEL]   (default port: 12345)
"""
import argparse
import asyncio
import itertools
import logging
import sys
from dataclasses import dataclass

import websockets

from errors import BindFailure, MalformedPayload, TransportFailure, UnsupportedPayload
from messages import Message, normalize, now_ms
from settings import RelaySettings

logger = logging.getLogger(__name__)

OPEN = 'open'
CLOSING = 'closing'
CLOSED = 'closed'

_connection_ids = itertools.count(1)


# ── Connections ───────────────────────────────────────────────
class Connection:
    """One peer session: transport handle, liveness state and an outbox."""

    def __init__(self, websocket):
        self.id = next(_connection_ids)
        self.websocket = websocket
        self.state = OPEN
        self._outbox = asyncio.Queue()
        self._writer = None

    def __repr__(self):
        return f'<Connection {self.id} {self.state} {self.remote_address}>'

    @property
    def remote_address(self):
        return getattr(self.websocket, 'remote_address', None)

    def deliver(self, message: Message) -> bool:
        if self.state != OPEN:
            return False
        self._outbox.put_nowait(message)
        return True

    def start_writer(self, on_failure):
        self._writer = asyncio.create_task(self._write_loop(on_failure))

    async def stop_writer(self):
        if self._writer is None:
            return
        self._writer.cancel()
        await asyncio.gather(self._writer, return_exceptions=True)
        self._writer = None

    async def _write_loop(self, on_failure):
        # Outbox order is delivery order: replay first, then live traffic.
        while True:
            message = await self._outbox.get()
            try:
                await self.websocket.send(message.payload)
            except (websockets.ConnectionClosed, OSError) as e:
                on_failure(self, TransportFailure(self.id, e))
                await self._close_transport()
                return

    async def _close_transport(self):
        # ends the read loop too, so the handler runs its normal teardown
        try:
            await self.websocket.close()
        except (websockets.ConnectionClosed, OSError) as e:
            logger.debug('Connection %d: close after write failure: %s', self.id, e)


class Registry:
    """Open connections keyed by their transport handle."""

    def __init__(self):
        self._members = {}

    def __len__(self):
        return len(self._members)

    def __contains__(self, connection):
        return self._members.get(connection.websocket) is connection

    def add(self, connection):
        if connection.websocket in self._members:
            raise ValueError(f'transport already registered: {connection!r}')
        self._members[connection.websocket] = connection

    def discard(self, connection) -> bool:
        if connection not in self:
            return False
        del self._members[connection.websocket]
        return True

    def open_connections(self):
        return [c for c in self._members.values() if c.state == OPEN]


class History:
    """Append-only log of every broadcast message, for the process lifetime."""

    def __init__(self):
        self._messages = []

    def __len__(self):
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    def append(self, message: Message):
        self._messages.append(message)

    def snapshot(self):
        return tuple(self._messages)


# ── Dispatcher events ─────────────────────────────────────────
@dataclass(frozen=True)
class Join:
    connection: Connection


@dataclass(frozen=True)
class Publish:
    connection: Connection
    message: Message


@dataclass(frozen=True)
class Leave:
    connection: Connection


# ── Relay server ──────────────────────────────────────────────
class RelayServer:
    def __init__(self, clock=now_ms):
        self.clock = clock
        self.registry = Registry()
        self.history = History()
        self._events = asyncio.Queue()
        self._dispatcher = None
        self._server = None

    @property
    def port(self):
        if self._server is None:
            raise RuntimeError('relay is not serving')
        return self._server.sockets[0].getsockname()[1]

    async def start(self, host, port):
        self._dispatcher = asyncio.create_task(self._dispatch())
        try:
            self._server = await websockets.serve(self.handler, host, port)
        except OSError as e:
            await self._stop_dispatcher()
            raise BindFailure(host, port, e) from e
        logger.info('Relay listening on ws://%s:%s', host, self.port)
        return self

    async def close(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self._stop_dispatcher()

    async def serve_forever(self):
        await asyncio.Future()

    async def drain(self):
        """Wait until every event posted so far has been dispatched."""
        await self._events.join()

    async def handler(self, websocket):
        connection = Connection(websocket)
        self.join(connection)
        try:
            async for frame in websocket:
                self.receive(connection, frame)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self.leave(connection)

    def join(self, connection):
        connection.start_writer(self._on_transport_failure)
        self._events.put_nowait(Join(connection))

    def receive(self, connection, frame):
        if connection.state != OPEN:
            logger.debug('Ignored frame from %s connection %d', connection.state, connection.id)
            return None
        try:
            message = normalize(frame, self.clock)
        except (MalformedPayload, UnsupportedPayload) as e:
            logger.warning('Dropped frame from connection %d: %s', connection.id, e)
            return None
        self._events.put_nowait(Publish(connection, message))
        return message

    async def leave(self, connection):
        self._teardown(connection)
        await connection.stop_writer()
        connection.state = CLOSED

    def _teardown(self, connection):
        if connection.state == OPEN:
            connection.state = CLOSING
            self._events.put_nowait(Leave(connection))

    def _on_transport_failure(self, connection, failure):
        logger.info('%s', failure)
        self._teardown(connection)

    async def _dispatch(self):
        while True:
            event = await self._events.get()
            try:
                self._apply(event)
            except Exception:
                logger.exception('Dispatcher failed on %r', event)
            finally:
                self._events.task_done()

    def _apply(self, event):
        connection = event.connection
        if isinstance(event, Join):
            if connection.state != OPEN:
                return
            self.registry.add(connection)
            for message in self.history:
                connection.deliver(message)
            logger.info('[+] %s  (%d connected, %d replayed)',
                        connection.remote_address, len(self.registry), len(self.history))
        elif isinstance(event, Publish):
            self.history.append(event.message)
            for recipient in self.registry.open_connections():
                recipient.deliver(event.message)
            logger.debug('Connection %d: %r', connection.id, event.message.payload)
        elif isinstance(event, Leave):
            if self.registry.discard(connection):
                logger.info('[-] %s  (%d connected)', connection.remote_address, len(self.registry))

    async def _stop_dispatcher(self):
        if self._dispatcher is None:
            return
        self._dispatcher.cancel()
        await asyncio.gather(self._dispatcher, return_exceptions=True)
        self._dispatcher = None


def parse_args(argv=None, settings=None):
    settings = settings or RelaySettings.from_env()
    parser = argparse.ArgumentParser(description='WebSocket relay with history replay')
    parser.add_argument('port', nargs='?', type=int, default=settings.port,
                        help=f'port to listen on (default: {settings.port})')
    parser.add_argument('--host', default=settings.host,
                        help=f'interface to bind (default: {settings.host})')
    parser.add_argument('--log-level', default=settings.log_level, type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser.parse_args(argv)


async def run(host, port):
    relay = RelayServer()
    await relay.start(host, port)
    try:
        await relay.serve_forever()
    finally:
        await relay.close()


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    try:
        asyncio.run(run(args.host, args.port))
    except BindFailure as e:
        logger.error('%s', e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == '__main__':
    sys.exit(main())
