"""Core subpackage - turn loop, tool dispatch, permissions and events."""

from agent_engine.core.compactor import ContextCompactor
from agent_engine.core.coordinator import RetryPolicy, TurnCoordinator
from agent_engine.core.errors import ErrorCode, EngineError
from agent_engine.core.events import Event, EventBus, EventKind, Subscription
from agent_engine.core.executor import ExecutionContext, ToolExecutionEngine
from agent_engine.core.interrupt import CancelSignal
from agent_engine.core.llm import LiteLLMProvider, Provider
from agent_engine.core.permissions import PermissionDecision, PermissionGate
from agent_engine.core.registry import ToolDescriptor, ToolRegistry
from agent_engine.core.tool_result import ToolResult
