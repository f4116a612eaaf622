import asyncio, traceback
from typing import Dict, Callable, Awaitable, Optional, Tuple, List
from glyphatlas.fontcache import FontCache
from glyphatlas.engine import BitmapEngine
from glyphatlas.textureatlas import TextureAtlas, AtlasConfig, make_atlas
from glyphatlas.helpers import DEBUG

class RPCError(RuntimeError): pass

class AtlasWorker:
    """Serves {"serial", "fn", "args"} requests from inbox, one at a time in arrival order, and answers on outbox with
    {"serial", "ok": True, "result"} or {"serial", "ok": False, "error"}. Builds share the engine's arena so they never overlap."""
    def __init__(self, cache:FontCache=None, engine:BitmapEngine=None):
        self.cache = FontCache() if cache is None else cache
        self.engine = BitmapEngine() if engine is None else engine
        self.api:Dict[str, Callable[..., Awaitable]] = {"make_atlas": self.make_atlas}
        self.inbox:asyncio.Queue = asyncio.Queue()
        self.outbox:asyncio.Queue = asyncio.Queue()

    async def make_atlas(self, config:AtlasConfig) -> TextureAtlas: return await make_atlas(config, self.cache, self.engine)

    def post(self, message:dict):
        """Queues a request. Unknown functions are answered right away and never queued."""
        if (fn := message.get("fn")) not in self.api: self.outbox.put_nowait({"serial": message.get("serial"), "ok": False, "error": f"no such function: {fn}"})
        else: self.inbox.put_nowait(message)

    async def handle(self, message:dict) -> dict:
        serial = message.get("serial")
        try: result = await self.api[message["fn"]](*message.get("args", []))
        except Exception as e:
            if DEBUG: traceback.print_exc()
            return {"serial": serial, "ok": False, "error": f"{type(e).__name__}: {e}"}
        return {"serial": serial, "ok": True, "result": result}

    async def serve(self):
        self.outbox.put_nowait({"status": "READY"})
        while True:
            message = await self.inbox.get()
            try: self.outbox.put_nowait(await self.handle(message))
            finally: self.inbox.task_done()

class AtlasWorkerClient:
    """Calls into an AtlasWorker without blocking on earlier calls, responses are matched to calls by serial.

    async with AtlasWorkerClient(AtlasWorker()) as client:
        atlas = await client.call("make_atlas", AtlasConfig())
    """
    def __init__(self, worker:AtlasWorker):
        self.worker = worker
        self.serial = 0
        self.pending:Dict[int, Tuple[asyncio.Future, str]] = {}
        self.ready:Optional[asyncio.Future] = None
        self.tasks:List[asyncio.Task] = []

    async def start(self):
        self.ready = asyncio.get_running_loop().create_future()
        self.tasks = [asyncio.create_task(self.worker.serve()), asyncio.create_task(self._receive())]
        await self.ready

    async def close(self):
        for t in self.tasks: t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args): await self.close()

    async def _receive(self):
        while True:
            data = await self.worker.outbox.get()
            if data.get("status") == "READY":
                if not self.ready.done(): self.ready.set_result(True)
                continue
            if (h := self.pending.pop(data.get("serial"), None)) is None:
                print(f"unhandled message from atlas worker: {data}")
                continue
            future, signature = h
            if future.done(): continue
            if data["ok"]: future.set_result(data["result"])
            else: future.set_exception(RPCError(f"{signature} => {data['error']}"))

    async def call(self, fn:str, *args):
        assert self.ready is not None and self.ready.done(), "Atlas worker not started"
        self.serial += 1
        future = asyncio.get_running_loop().create_future()
        self.pending[self.serial] = (future, f"{fn}({', '.join(map(repr, args))})#{self.serial}")
        self.worker.post({"serial": self.serial, "fn": fn, "args": list(args)})
        return await future
