"""
Agent pool - tracks build agents and hands out exclusive slots on them.
"""

import asyncio
import itertools
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from controller.src.errors import AcquireError, RegistrationError, ReleaseError
from controller.src.models.agent import Agent

logger = logging.getLogger(__name__)

_lease_ids = itertools.count(1)


def load_agents(path: str) -> List[Agent]:
    """
    Read statically provisioned agents from a YAML file:

        agents:
          - id: linux-1
            labels: [linux, docker]
            capacity: 2
            workdir: /var/lib/runway/linux-1
    """
    if not os.path.exists(path):
        logger.warning(f"Agents file {path} not found, starting with an empty pool")
        return []

    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}

    try:
        return [Agent.model_validate(entry) for entry in config.get("agents", [])]
    except ValidationError as e:
        raise RegistrationError(f"Invalid agents file {path}: {e}") from e


@dataclass(eq=False)
class Lease:
    """One reserved slot on an agent, owned by a single run and stage."""

    agent: Agent
    run_id: str
    stage: str
    id: int = field(default_factory=lambda: next(_lease_ids))
    lost: asyncio.Event = field(default_factory=asyncio.Event)
    released: bool = False

    @property
    def is_lost(self) -> bool:
        return self.lost.is_set()


@dataclass(eq=False)
class _AgentRecord:
    agent: Agent
    order: int
    idle_since: float
    leases: List[Lease] = field(default_factory=list)

    @property
    def free_slots(self) -> int:
        return self.agent.capacity - len(self.leases)


class AgentPool:
    """
    Registry of agents and their current allocations.

    All reads and writes of the allocation table happen under one
    ``asyncio.Condition``, so checking for a free slot and reserving it is a
    single step.
    """

    def __init__(self, agents: Optional[Iterable[Agent]] = None):
        self._records: Dict[str, _AgentRecord] = {}
        self._order = itertools.count()
        self._changed = asyncio.Condition()
        for agent in agents or []:
            self._add(agent)

    def _add(self, agent: Agent):
        if agent.id in self._records:
            raise RegistrationError(f"Agent '{agent.id}' is already registered")
        self._records[agent.id] = _AgentRecord(
            agent=agent,
            order=next(self._order),
            idle_since=time.monotonic(),
        )
        logger.info(f"Registered agent {agent.id} labels={sorted(agent.labels)} capacity={agent.capacity}")

    async def register(self, agent: Agent):
        """Add an agent and wake up any waiting acquisitions."""
        async with self._changed:
            self._add(agent)
            self._changed.notify_all()

    async def evict(self, agent_id: str) -> bool:
        """
        Remove an agent from the pool.

        Leases still held on it are marked lost; the step running there is
        stopped and its stage fails with ``AgentLostError``.
        """
        async with self._changed:
            record = self._records.pop(agent_id, None)
            if record is None:
                logger.warning(f"Evict requested for unknown agent {agent_id}")
                return False
            for lease in record.leases:
                logger.warning(
                    f"Agent {agent_id} evicted while allocated to run {lease.run_id} stage '{lease.stage}'"
                )
                lease.lost.set()
            self._changed.notify_all()
        logger.info(f"Evicted agent {agent_id}")
        return True

    def _pick(self, labels) -> Optional[_AgentRecord]:
        candidates = [
            r for r in self._records.values()
            if r.free_slots > 0 and r.agent.matches(labels)
        ]
        if not candidates:
            return None
        # Longest idle first, then registration order
        return min(candidates, key=lambda r: (r.idle_since, r.order))

    async def acquire(
        self,
        labels: Iterable[str],
        timeout: float,
        run_id: str,
        stage: str,
    ) -> Lease:
        """Wait until a matching agent has a free slot and reserve it."""
        labels = frozenset(labels)
        deadline = time.monotonic() + timeout

        async with self._changed:
            while True:
                record = self._pick(labels)
                if record is not None:
                    lease = Lease(agent=record.agent, run_id=run_id, stage=stage)
                    record.leases.append(lease)
                    logger.info(
                        f"Allocated agent {record.agent.id} to run {run_id} stage '{stage}'"
                    )
                    return lease

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AcquireError(labels, timeout)
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    # Loop once more so a slot freed at the deadline is still taken
                    continue

    async def release(self, lease: Lease):
        """Return a lease's slot to the pool."""
        async with self._changed:
            if lease.released:
                raise ReleaseError(lease.agent.id)

            record = self._records.get(lease.agent.id)
            if record is None or lease not in record.leases:
                if lease.is_lost:
                    # The agent was evicted; its slot no longer exists
                    lease.released = True
                    logger.debug(f"Released lost lease on evicted agent {lease.agent.id}")
                    return
                raise ReleaseError(lease.agent.id)

            record.leases.remove(lease)
            lease.released = True
            if not record.leases:
                record.idle_since = time.monotonic()
            self._changed.notify_all()
        logger.info(f"Released agent {lease.agent.id} from run {lease.run_id} stage '{lease.stage}'")

    def agents(self) -> List[Agent]:
        return [r.agent for r in sorted(self._records.values(), key=lambda r: r.order)]

    def allocations(self) -> Dict[str, List[str]]:
        """Run ids currently holding a slot, per agent."""
        return {agent_id: [l.run_id for l in r.leases] for agent_id, r in self._records.items()}
