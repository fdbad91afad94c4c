import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from fleet_autoscaler.models import Agent, BatchState, Job, JobBatch, JobStep, Lease, Pool, StepState
from fleet_autoscaler.state.document import State, StateDocument


class FleetStore(ABC):
    """Access to pools, agents, leases and jobs owned by the surrounding service."""

    async def refresh(self) -> None:
        """Called at the start of each tick. Snapshot stores reload here so one tick sees one version."""

    @abstractmethod
    async def get_pools(self) -> List[Pool]:
        pass

    @abstractmethod
    async def get_agents(self) -> List[Agent]:
        pass

    @abstractmethod
    async def request_shutdown(self, agent: Agent, reason: str) -> bool:
        """Flag an agent for graceful shutdown. Returns False if the agent could not be updated."""

    @abstractmethod
    async def find_leases(self, min_time: datetime) -> List[Lease]:
        """Leases that were active at any point since min_time."""

    @abstractmethod
    async def find_jobs(self, min_create_time: datetime) -> List[Job]:
        pass


class MemoryFleetStore(FleetStore):
    """Fleet store backed by plain lists. Used by tests and local simulations."""

    def __init__(self, pools: Iterable[Pool] = (), agents: Iterable[Agent] = (),
                 leases: Iterable[Lease] = (), jobs: Iterable[Job] = ()):
        self.pools = list(pools)
        self.agents = list(agents)
        self.leases = list(leases)
        self.jobs = list(jobs)
        self.shutdown_reasons: Dict[str, str] = {}

    async def get_pools(self) -> List[Pool]:
        return list(self.pools)

    async def get_agents(self) -> List[Agent]:
        return list(self.agents)

    async def request_shutdown(self, agent: Agent, reason: str) -> bool:
        for idx, existing in enumerate(self.agents):
            if existing.id == agent.id:
                self.agents[idx] = existing._replace(request_shutdown=True)
                self.shutdown_reasons[agent.id] = reason
                return True
        return False

    async def find_leases(self, min_time: datetime) -> List[Lease]:
        return [lease for lease in self.leases if lease.finish_time is None or lease.finish_time >= min_time]

    async def find_jobs(self, min_create_time: datetime) -> List[Job]:
        return [job for job in self.jobs if job.create_time >= min_create_time]


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def pool_from_dict(data: Dict[str, Any]) -> Pool:
    return Pool(
        id=data['id'],
        name=data.get('name', data['id']),
        size_strategy=data.get('size_strategy'),
        min_agents=int(data.get('min_agents') or 0),
        max_agents=int(data['max_agents']) if data.get('max_agents') is not None else None
    )


def agent_from_dict(data: Dict[str, Any]) -> Agent:
    return Agent(
        id=data['id'],
        pool_id=data['pool_id'],
        properties=frozenset(data.get('properties', [])),
        num_leases=int(data.get('num_leases', 0)),
        request_shutdown=bool(data.get('request_shutdown', False))
    )


def lease_from_dict(data: Dict[str, Any]) -> Lease:
    return Lease(
        id=data['id'],
        agent_id=data['agent_id'],
        pool_id=data['pool_id'],
        start_time=_parse_time(data['start_time']),
        finish_time=_parse_time(data.get('finish_time'))
    )


def job_from_dict(data: Dict[str, Any]) -> Job:
    batches = tuple(
        JobBatch(
            id=batch['id'],
            pool_id=batch['pool_id'],
            state=BatchState(batch.get('state', BatchState.WAITING.value)),
            steps=tuple(JobStep(id=step['id'], state=StepState(step.get('state', StepState.WAITING.value)))
                        for step in batch.get('steps', []))
        )
        for batch in data.get('batches', [])
    )
    return Job(id=data['id'], create_time=_parse_time(data['create_time']), batches=batches)


class S3FleetStore(FleetStore):
    """
    Fleet store reading a JSON snapshot of the fleet published by the agent service.

    The snapshot holds 'pools', 'agents', 'leases' and 'jobs' lists. Shutdown requests are
    written back into the same document through a conditional update, where the agent
    service picks them up. The document is read once per refresh() and every section is
    parsed from that read.
    """

    def __init__(self, document: StateDocument):
        self._document = document
        self._snapshot: Optional[State] = None

    async def refresh(self) -> None:
        self._snapshot = await self._document.get()

    async def _load(self, section: str) -> List[Dict[str, Any]]:
        if self._snapshot is None:
            await self.refresh()
        return self._snapshot.get(section) or []

    @staticmethod
    def _parse_all(items, parser, kind: str) -> list:
        parsed = []
        for item in items:
            try:
                parsed.append(parser(item))
            except (KeyError, TypeError, ValueError) as e:
                logging.warning(f"Ignoring malformed {kind} entry {item!r}: {e}")
        return parsed

    async def get_pools(self) -> List[Pool]:
        return self._parse_all(await self._load('pools'), pool_from_dict, 'pool')

    async def get_agents(self) -> List[Agent]:
        return self._parse_all(await self._load('agents'), agent_from_dict, 'agent')

    async def request_shutdown(self, agent: Agent, reason: str) -> bool:
        found = []

        def mark_for_shutdown(state: State):
            found.clear()
            for item in state.get('agents') or []:
                if item.get('id') == agent.id:
                    item['request_shutdown'] = True
                    item['shutdown_reason'] = reason
                    found.append(item)

        self._snapshot = await self._document.update(mark_for_shutdown)
        return bool(found)

    async def find_leases(self, min_time: datetime) -> List[Lease]:
        leases = self._parse_all(await self._load('leases'), lease_from_dict, 'lease')
        return [lease for lease in leases if lease.finish_time is None or lease.finish_time >= min_time]

    async def find_jobs(self, min_create_time: datetime) -> List[Job]:
        jobs = self._parse_all(await self._load('jobs'), job_from_dict, 'job')
        return [job for job in jobs if job.create_time >= min_create_time]
