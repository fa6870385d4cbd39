"""Registry dispatching node kinds to their executors."""

import asyncio
import functools
import inspect
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Union

from ..models.core import Failure, Node, NodeKind, NodeOutcome, Success
from .exceptions import (
    ErrorCategory,
    ExecutorRegistryError,
    NodeExecutionError,
    classify_error,
    is_retryable_error,
)
from .logging import get_logger

logger = get_logger(__name__)


Executor = Callable[[Node, Any], Any]


def _normalize_kind(kind: Union[NodeKind, str]) -> str:
    if isinstance(kind, NodeKind):
        return kind.value
    if not kind or not str(kind).strip():
        raise ExecutorRegistryError("Node kind cannot be empty")
    return str(kind).strip()


def failure_from_exception(exc: BaseException) -> Failure:
    """Convert an exception raised by an executor into a :class:`Failure`."""
    if isinstance(exc, NodeExecutionError):
        return Failure(error=exc.message, category=exc.category.value, retryable=exc.retryable)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        message = str(exc) or "Node execution timed out"
        return Failure(error=message, category=ErrorCategory.TIMEOUT.value, retryable=True)

    message = str(exc) or type(exc).__name__
    category = classify_error(message)
    return Failure(
        error=message,
        category=category.value,
        retryable=is_retryable_error(message, category),
    )


def is_async_callable(func: Any) -> bool:
    """True for coroutine functions and objects with an ``async def __call__``."""
    while isinstance(func, functools.partial):
        func = func.func
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(getattr(func, "__call__", None))


def coerce_outcome(result: Any) -> NodeOutcome:
    """Wrap a bare executor return value into an outcome."""
    if isinstance(result, Success):
        return result
    if isinstance(result, Failure):
        if result.category is None:
            return result.model_copy(update={"category": classify_error(result.error).value})
        return result
    return Success(output=result)


class NodeExecutorRegistry:
    """Maps node kinds to executors and runs them with uniform error handling.

    An executor is called as ``executor(node, input)``. It may be a plain
    function, which runs on the registry's thread pool, or a coroutine
    function. It returns a :class:`Success`, a :class:`Failure`, or any other
    value which is treated as a successful output. Exceptions become failures.

    Registries are passed to each run explicitly; there is no global instance.
    """

    def __init__(self, thread_pool: Optional[ThreadPoolExecutor] = None, max_workers: int = 4):
        """Initialize the registry.

        Args:
            thread_pool: Pool used for synchronous executors. If not provided,
                one with ``max_workers`` threads is created lazily and owned by
                the registry.
            max_workers: Size of the owned pool
        """
        self._executors: Dict[str, Executor] = {}
        self._descriptions: Dict[str, str] = {}
        self._fallback: Optional[Executor] = None
        self._thread_pool = thread_pool
        self._owns_pool = thread_pool is None
        self._max_workers = max_workers

    def register(self, kind: Union[NodeKind, str], executor: Executor,
                 description: str = "", replace: bool = False) -> None:
        """Register an executor for a node kind.

        Args:
            kind: Node kind handled by the executor
            executor: Callable accepting ``(node, input)``
            description: Optional description of what the executor does
            replace: Allow replacing an already registered executor

        Raises:
            ExecutorRegistryError: If the kind is already registered or the
                executor cannot be called with two positional arguments
        """
        key = _normalize_kind(kind)
        self._check_executor(key, executor)

        if key in self._executors and not replace:
            raise ExecutorRegistryError(
                f"Executor for kind '{key}' is already registered", kind=key, operation="register"
            )

        self._executors[key] = executor
        self._descriptions[key] = description.strip() if description else ""
        logger.info(f"Registered executor for node kind '{key}': {getattr(executor, '__name__', repr(executor))}")

    def unregister(self, kind: Union[NodeKind, str]) -> bool:
        """Remove the executor of a node kind.

        Returns:
            True if an executor was removed, False if none was registered
        """
        key = _normalize_kind(kind)
        if key not in self._executors:
            return False
        del self._executors[key]
        self._descriptions.pop(key, None)
        logger.info(f"Unregistered executor for node kind '{key}'")
        return True

    def has_executor(self, kind: Union[NodeKind, str]) -> bool:
        try:
            return _normalize_kind(kind) in self._executors
        except ExecutorRegistryError:
            return False

    def get_executor(self, kind: Union[NodeKind, str]) -> Executor:
        """Retrieve the executor for a node kind, falling back if one is set.

        Raises:
            ExecutorRegistryError: If neither a registered nor a fallback executor exists
        """
        key = _normalize_kind(kind)
        executor = self._executors.get(key, self._fallback)
        if executor is None:
            raise ExecutorRegistryError(
                f"No executor registered for node kind '{key}'", kind=key, operation="get"
            )
        return executor

    def list_executors(self) -> Dict[str, str]:
        """Registered node kinds with their descriptions."""
        return dict(self._descriptions)

    def set_fallback(self, executor: Optional[Executor]) -> None:
        """Set the executor used for kinds without a registered executor."""
        if executor is not None:
            self._check_executor("fallback", executor)
        self._fallback = executor

    async def execute(self, node: Node, input_data: Any = None) -> NodeOutcome:
        """Run the executor for ``node`` and normalize its result.

        Never raises for executor problems: a missing executor yields a
        non-retryable configuration failure, and exceptions raised by the
        executor are classified into failures.
        """
        try:
            executor = self.get_executor(node.kind)
        except ExecutorRegistryError as e:
            return Failure(error=e.message, category=ErrorCategory.CONFIGURATION.value, retryable=False)

        try:
            if is_async_callable(executor):
                result = await executor(node, input_data)
            else:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(
                    self._get_thread_pool(), functools.partial(executor, node, input_data)
                )
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            logger.debug(f"Executor for node {node.id} raised {type(e).__name__}: {e}")
            return failure_from_exception(e)

        return coerce_outcome(result)

    def shutdown(self, wait: bool = False) -> None:
        """Shut down the owned thread pool, if any."""
        if self._owns_pool and self._thread_pool is not None:
            self._thread_pool.shutdown(wait=wait)
            self._thread_pool = None

    def _get_thread_pool(self) -> ThreadPoolExecutor:
        if self._thread_pool is None:
            self._thread_pool = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="flowengine-executor"
            )
        return self._thread_pool

    @staticmethod
    def _check_executor(key: str, executor: Any) -> None:
        if not callable(executor):
            raise ExecutorRegistryError(f"Executor for '{key}' must be callable", kind=key)
        try:
            inspect.signature(executor).bind(None, None)
        except TypeError:
            raise ExecutorRegistryError(
                f"Executor for '{key}' must accept (node, input) arguments", kind=key
            )
        except ValueError:
            # Builtins without an inspectable signature are accepted as-is.
            pass
