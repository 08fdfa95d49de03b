"""
Action relauncher — re-runs a take/scene action after a failed verification.

Builds the take prompt from the backend, starts the implementing agent in
the repository and, once it exits, reports back through ``on_complete`` so
the new attempt is verified in turn.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from features.backends import BackendPort, get_backend
from features.backends.errors import unwrap
from models.schemas import TakePromptOptions
from utils.agent_adapter import AgentDescriptor, build_prompt_mode_args, default_agent
from utils.agent_process import AgentHandle, AgentSpawner, collect_output, spawn_agent

log = logging.getLogger(__name__)

CompletionCallback = Callable[[list[str], str, str, "int | None"], Awaitable[None]]


class ActionRelauncher:
    def __init__(self, on_complete: CompletionCallback,
                 backend_factory: Callable[[], BackendPort] = get_backend,
                 spawner: AgentSpawner = spawn_agent,
                 agent_factory: Callable[[], AgentDescriptor] = default_agent):
        self._on_complete = on_complete
        self._backend_factory = backend_factory
        self._spawner = spawner
        self._agent_factory = agent_factory
        self._running: set[asyncio.Task] = set()

    async def build_prompt(self, beat_ids: list[str], action: str, repo_path: str) -> str:
        backend = self._backend_factory()
        if action == "scene" and len(beat_ids) > 1:
            prompts = []
            for beat_id in beat_ids:
                taken = unwrap(await backend.build_take_prompt(beat_id, None, repo_path), f"take {beat_id}")
                prompts.append(taken.prompt)
            header = f"Scene with {len(beat_ids)} beats. Implement each of them:"
            return "\n\n".join([header, *prompts])
        taken = unwrap(
            await backend.build_take_prompt(beat_ids[0], TakePromptOptions(), repo_path),
            f"take {beat_ids[0]}",
        )
        return taken.prompt

    async def __call__(self, beat_ids: list[str], action: str, repo_path: str) -> None:
        prompt = await self.build_prompt(beat_ids, action, repo_path)
        agent = self._agent_factory()
        handle = await self._spawner(build_prompt_mode_args(agent, prompt), repo_path)
        log.info("[VERIFY] Relaunched %s for %s", action, ", ".join(beat_ids))
        task = asyncio.create_task(self._watch(handle, beat_ids, action, repo_path))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _watch(self, handle: AgentHandle, beat_ids: list[str], action: str, repo_path: str) -> None:
        result = await collect_output(handle)
        log.info("[VERIFY] Relaunched %s for %s exited with %s",
                 action, ", ".join(beat_ids), result.returncode)
        await self._on_complete(beat_ids, action, repo_path, result.returncode)

    async def wait_idle(self) -> None:
        """Wait for every relaunched agent (and its verification) to finish."""
        while self._running:
            await asyncio.gather(*list(self._running))
