"""Public library API for helios: Session class and Result dataclass."""

import asyncio
import copy
from dataclasses import dataclass

from .audit import AuditLogger
from .loop_detector import LoopDetector
from .permissions import Confirm, PermissionState, toggle_auto_approve
from .provider import ChatOptions, Provider
from .registry import ToolRegistry
from .tools import register_builtin_tools


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    exhausted: bool
    messages: list[dict]


class Session:
    """Programmatic interface to the supervised agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() / .ask_async() for multi-turn conversations. A
    ready-made Provider can be passed as *backend*, in which case no
    provider resolution happens.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_ms: int = 60_000,
        max_retries: int = 3,
        max_iterations: int = 30,
        temperature: float = 0.7,
        max_output_tokens: int = 8192,
        streaming: bool = True,
        auto_approve: bool = False,
        audit_log: str | None = None,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        block_medium_loops: bool = False,
        compact: bool = False,
        mcp_servers: dict | None = None,
        verbose: bool = False,
        confirm: Confirm | None = None,
        backend: Provider | None = None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.max_iterations = max_iterations
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.streaming = streaming
        self.auto_approve = auto_approve
        self.audit_log = audit_log
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.block_medium_loops = block_medium_loops
        self.compact = compact
        self.mcp_servers = mcp_servers or {}
        self.verbose = verbose
        self.confirm = confirm

        # Setup state (cached after first setup())
        self._setup_done = False
        self.backend = backend
        self.registry: ToolRegistry | None = None
        self.supervisor = None
        self._mcp_manager = None
        self._system_content: str | None = None

        # Conversation state (for ask() mode)
        self.messages: list[dict] = []

    def setup(self) -> None:
        """Perform one-time setup: resolve provider, tools, MCP servers, supervision."""
        if self._setup_done:
            return

        from . import fmt
        from .agent import Supervisor, build_system_prompt
        from .provider import resolve_provider

        if self.backend is None:
            self.backend = resolve_provider(
                provider=self.provider,
                model=self.model,
                api_key=self.api_key,
                base_url=self.base_url,
            )
        if self.verbose:
            fmt.model_info(f"Provider: {self.provider_name} | model: {self.model_name}")

        self.registry = ToolRegistry()
        register_builtin_tools(self.registry, self.base_dir)

        if self.mcp_servers:
            from .mcp_client import McpManager

            self._mcp_manager = McpManager(self.mcp_servers)
            self._mcp_manager.start()
            self.registry.attach_mcp(self._mcp_manager)

        self._system_content = build_system_prompt(
            self.system_prompt, self.no_system_prompt, self.base_dir
        )
        self.messages = self._make_initial_messages()

        self.supervisor = Supervisor(
            loop_detector=LoopDetector(),
            audit=AuditLogger(self.audit_log),
            permissions=PermissionState(auto_approve=self.auto_approve),
            confirm=self.confirm,
            block_medium_loops=self.block_medium_loops,
        )
        self._setup_done = True

    @property
    def provider_name(self) -> str:
        return getattr(self.backend, "name", None) or self.provider or "unknown"

    @property
    def model_name(self) -> str:
        return getattr(self.backend, "model", None) or self.model or "unknown"

    @property
    def options(self) -> ChatOptions:
        return ChatOptions(
            model=self.model_name,
            timeout_ms=self.timeout_ms,
            temperature=self.temperature,
            max_retries=self.max_retries,
            max_output_tokens=self.max_output_tokens,
        )

    @property
    def echoes_stream(self) -> bool:
        """True when the answer already reached stdout while streaming."""
        return self.streaming and self.verbose

    def _make_initial_messages(self) -> list[dict]:
        messages: list[dict] = []
        if self._system_content is not None:
            messages.append({"role": "system", "content": self._system_content})
        return messages

    async def _loop(self, messages: list[dict]) -> tuple[str | None, bool]:
        from .agent import run_agent_loop

        return await run_agent_loop(
            messages,
            self.registry,
            self.backend,
            self.supervisor,
            options=self.options,
            max_iterations=self.max_iterations,
            streaming=self.streaming,
            verbose=self.verbose,
            compact=self.compact,
        )

    async def ask_async(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self.setup()
        self.messages.append({"role": "user", "content": question})
        answer, exhausted = await self._loop(self.messages)
        return Result(
            answer=answer, exhausted=exhausted, messages=copy.deepcopy(self.messages)
        )

    def ask(self, question: str) -> Result:
        return asyncio.run(self.ask_async(question))

    def run(self, question: str) -> Result:
        """Single-shot: run a question with fresh context. Each call is independent."""
        self.setup()
        messages = self._make_initial_messages()
        messages.append({"role": "user", "content": question})
        answer, exhausted = asyncio.run(self._loop(messages))
        return Result(answer=answer, exhausted=exhausted, messages=copy.deepcopy(messages))

    def reset(self) -> int:
        """Drop everything but the system prompt and forget loop history.

        Returns the number of messages removed. Audit history and cached
        permission approvals survive.
        """
        kept = [m for m in self.messages if m.get("role") == "system"]
        dropped = len(self.messages) - len(kept)
        self.messages = kept
        if self.supervisor is not None:
            self.supervisor.loop_detector.reset()
        return dropped

    def toggle_auto_approve(self) -> bool:
        self.setup()
        self.auto_approve = toggle_auto_approve(self.supervisor.permissions)
        return self.auto_approve

    def close(self) -> None:
        if self._mcp_manager is not None:
            self._mcp_manager.close()
            self._mcp_manager = None
        if self.registry is not None:
            self.registry.detach_mcp()
