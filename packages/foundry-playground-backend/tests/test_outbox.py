import asyncio
import threading
import time
from typing import Any, Dict, List, Optional

from playground_api.outbox import ConnectionOutbox


async def _drain(box: ConnectionOutbox) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    while True:
        msg: Optional[Dict[str, Any]] = await box.get()
        if msg is None:
            return out
        out.append(msg)


def test_messages_from_worker_threads_arrive_in_order() -> None:
    async def _main() -> List[Dict[str, Any]]:
        box = ConnectionOutbox(loop=asyncio.get_running_loop(), max_messages=2)

        def _producer() -> None:
            for i in range(20):
                box.chunk("stdout", str(i))
            box.chunk("stderr", "boom")
            box.signal("commandComplete", exitCode=1)
            box.close()

        threading.Thread(target=_producer, daemon=True).start()
        return await _drain(box)

    got = asyncio.run(_main())
    assert got[:20] == [{"output": str(i)} for i in range(20)]
    assert got[20:] == [{"error": "boom"}, {"type": "commandComplete", "exitCode": 1}]


def test_full_outbox_blocks_the_producer_until_consumed() -> None:
    async def _main() -> bool:
        box = ConnectionOutbox(loop=asyncio.get_running_loop(), max_messages=1)
        done = threading.Event()

        def _producer() -> None:
            for i in range(3):
                box.chunk("stdout", str(i))
            done.set()

        threading.Thread(target=_producer, daemon=True).start()
        await asyncio.sleep(0.3)
        blocked = not done.is_set()
        for _ in range(3):
            await box.get()
        await asyncio.to_thread(done.wait, 5)
        return blocked and done.is_set()

    assert asyncio.run(_main()) is True


def test_close_releases_blocked_producer_and_drops_messages() -> None:
    async def _main() -> List[bool]:
        box = ConnectionOutbox(loop=asyncio.get_running_loop(), max_messages=1)
        results: List[bool] = []

        def _producer() -> None:
            results.append(box.put_threadsafe({"output": "a"}))
            results.append(box.put_threadsafe({"output": "b"}))

        t = threading.Thread(target=_producer, daemon=True)
        t.start()
        await asyncio.sleep(0.2)
        box.close()
        started = time.monotonic()
        await asyncio.to_thread(t.join, 5)
        assert time.monotonic() - started < 2
        assert box.put_threadsafe({"output": "c"}) is False
        return results

    assert asyncio.run(_main()) == [True, False]


def test_loop_thread_puts_do_not_consume_slots() -> None:
    async def _main() -> List[Dict[str, Any]]:
        box = ConnectionOutbox(loop=asyncio.get_running_loop(), max_messages=1)
        for i in range(5):
            await box.put({"output": str(i)})
        box.signal("replReady")
        box.close()
        return await _drain(box)

    got = asyncio.run(_main())
    assert len(got) == 6
    assert got[-1] == {"type": "replReady"}
