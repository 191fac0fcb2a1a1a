"""
Per-key deduplication of concurrent async work.

While a call for a key is in flight, further calls for the same key await
the first call's result instead of starting their own. The key is released
as soon as the leading call finishes, so nothing is cached here.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, TypeVar

T = TypeVar('T')


class SingleFlight:
    """Collapse concurrent calls sharing a key into one execution."""

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Future] = {}
        self.stats = {
            'leaders': 0,
            'followers': 0,
        }

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def do(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run `func` for `key`, or wait for the call already running."""
        while True:
            future = self._in_flight.get(key)
            if future is None:
                break

            self.stats['followers'] += 1
            try:
                # shield: a cancelled follower must not cancel the shared result
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                if not future.cancelled():
                    raise
                # The leader was cancelled, not us; take over the key

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        self.stats['leaders'] += 1

        try:
            result = await func()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Retrieved here so an unobserved failure is not reported by the loop
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            del self._in_flight[key]

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'in_flight': len(self._in_flight)}
