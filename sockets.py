"""
Name-indexed WebSocket client sockets.

Commands come in as open(name, url, meta), send(name, data) and close(name).
Events go out through the on_event callback as dicts:

    {"type": "opened",  "name": ..., "meta": ...}
    {"type": "message", "name": ..., "meta": ..., "data": ...}
    {"type": "closed",  "name": ..., "meta": ..., "reason": ...}
    {"type": "error",   "name": ..., "meta": ..., "error": None}

Every socket ends with exactly one "closed" or "error" event. A name is free
for reuse as soon as it is closed, and opening a name that is still in use
closes the old socket first.
"""
import asyncio
import json
import logging

import websockets
from websockets.exceptions import WebSocketException

logger = logging.getLogger(__name__)

REPLACED_REASON = 'New socket opened with the same name'


class SocketRecord:
    def __init__(self, name, url, meta):
        self.name = name
        self.url = url
        self.meta = meta
        self.ws = None
        self.task = None
        self.finished = False


class SocketPorts:
    def __init__(self, on_event):
        self.on_event = on_event
        self._sockets = {}

    def __contains__(self, name):
        return name in self._sockets

    def names(self):
        return list(self._sockets)

    async def dispatch(self, command):
        kind = command.get('type')
        if kind == 'open':
            await self.open(command['name'], command['url'], command.get('meta'))
        elif kind == 'send':
            await self.send(command['name'], command.get('data'))
        elif kind == 'close':
            await self.close(command['name'])
        else:
            raise ValueError(f'unknown socket command: {kind!r}')

    async def open(self, name, url, meta=None):
        previous = self._sockets.pop(name, None)
        if previous is not None:
            await self._shutdown(previous, REPLACED_REASON)

        record = SocketRecord(name, url, dict(meta or {}))
        self._sockets[name] = record
        record.task = asyncio.create_task(self._run(record))
        return record

    async def send(self, name, data):
        record = self._sockets.get(name)
        if record is None or record.ws is None:
            logger.warning('Dropped send to %r: socket not open', name)
            return False
        if isinstance(data, (dict, list)):
            data = json.dumps(data)
        try:
            await record.ws.send(data)
        except websockets.ConnectionClosed:
            # the socket's own task reports the terminal event
            return False
        return True

    async def close(self, name):
        record = self._sockets.pop(name, None)
        if record is not None:
            await self._shutdown(record)

    async def close_all(self):
        for name in list(self._sockets):
            await self.close(name)

    async def _shutdown(self, record, reason=''):
        if record.ws is not None:
            await record.ws.close(reason=reason)
        else:
            record.task.cancel()
        await asyncio.gather(record.task, return_exceptions=True)

    async def _run(self, record):
        try:
            async with websockets.connect(record.url) as ws:
                record.ws = ws
                self._emit(record, 'opened')
                async for data in ws:
                    self._emit(record, 'message', data=data)
            self._finish(record, 'closed', reason=ws.close_reason or '')
        except asyncio.CancelledError:
            self._finish(record, 'closed', reason='cancelled')
            raise
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning('Socket %r (%s) failed: %s', record.name, record.url, e)
            self._finish(record, 'error', error=None)

    def _finish(self, record, kind, **fields):
        if record.finished:
            return
        record.finished = True
        if self._sockets.get(record.name) is record:
            del self._sockets[record.name]
        self._emit(record, kind, **fields)

    def _emit(self, record, kind, **fields):
        event = {'type': kind, 'name': record.name, 'meta': record.meta}
        event.update(fields)
        self.on_event(event)
