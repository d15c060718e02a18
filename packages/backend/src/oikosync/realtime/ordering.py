"""Per-organization reorder buffer for events arriving over a shared channel.

Learn: With several API processes, two writes to the same organization can
take their sequence numbers (Redis INCR) in one order and reach the channel
in the other. The buffer holds early arrivals until the missing sequence
shows up, so local subscribers still see 1, 2, 3 — never 1, 3, 2.

If the gap never fills (a publisher crashed between INCR and PUBLISH), the
relay calls flush() after a short timeout and delivery resumes from the
highest held sequence. Anything arriving below the delivered watermark is
"late": its cache tag is still invalidated, but it is not delivered.
"""

from typing import Optional

from oikosync.events.types import ChangeEvent


class ReorderBuffer:
    def __init__(self):
        self._delivered: dict[str, int] = {}
        self._held: dict[str, dict[int, ChangeEvent]] = {}

    def last_delivered(self, organization_id: str) -> Optional[int]:
        return self._delivered.get(organization_id)

    def is_late(self, event: ChangeEvent) -> bool:
        last = self._delivered.get(event.organization_id)
        return last is not None and event.sequence <= last

    def has_gap(self, organization_id: str) -> bool:
        return bool(self._held.get(organization_id))

    def offer(self, event: ChangeEvent) -> list[ChangeEvent]:
        """Accept an event; return the events now ready, in sequence order."""
        org = event.organization_id
        last = self._delivered.get(org)
        if last is None:
            # First event seen for this org in this process: it sets the baseline.
            self._delivered[org] = event.sequence
            return [event]
        if event.sequence <= last:
            return []

        held = self._held.setdefault(org, {})
        held[event.sequence] = event
        ready = []
        while last + 1 in held:
            last += 1
            ready.append(held.pop(last))
        self._delivered[org] = last
        if not held:
            del self._held[org]
        return ready

    def flush(self, organization_id: str) -> list[ChangeEvent]:
        """Release every held event for an org, skipping missing sequences."""
        held = self._held.pop(organization_id, {})
        ready = [held[seq] for seq in sorted(held)]
        if ready:
            self._delivered[organization_id] = ready[-1].sequence
        return ready
