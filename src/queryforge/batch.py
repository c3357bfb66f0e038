"""Batch orchestration: many query types, one shared request context.

a dashboard asks for six panels at once. each parameter runs on its own:
  - at most `concurrency` of them hit the store at the same time
  - each gets `parameter_timeout` seconds once it starts
  - the whole batch gets `batch_timeout`; whatever is still running then is
    cancelled and reported as TIMEOUT

a failed parameter becomes a failed entry, its siblings carry on. results
come back in the order the parameters were asked for, not the order they
finished in.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from queryforge.errors import QueryError, QueryTimeoutError
from queryforge.models.query import BatchQueryRequest, ParameterResult

logger = logging.getLogger(__name__)

ParameterRunner = Callable[[str], Awaitable[list[dict]]]


@dataclass
class BatchConfig:
    concurrency: int = 4
    parameter_timeout: float = 15.0
    batch_timeout: float = 45.0


def _failure(parameter: str, error: QueryError) -> ParameterResult:
    return ParameterResult(
        parameter=parameter, success=False, error=error.message, code=error.code
    )


async def run_parameters(
    parameters: Sequence[str],
    run_parameter: ParameterRunner,
    config: BatchConfig | None = None,
) -> list[ParameterResult]:
    """Run every parameter, one ParameterResult per parameter, in input order."""
    config = config or BatchConfig()
    if not parameters:
        return []

    semaphore = asyncio.Semaphore(config.concurrency)

    async def run_one(parameter: str) -> ParameterResult:
        async with semaphore:
            try:
                data = await asyncio.wait_for(
                    run_parameter(parameter), timeout=config.parameter_timeout
                )
            except TimeoutError:
                return _failure(
                    parameter,
                    QueryTimeoutError(
                        f"Parameter '{parameter}' timed out after {config.parameter_timeout}s"
                    ),
                )
            except QueryError as e:
                logger.info("Batch parameter %s failed: %s %s", parameter, e.code, e.message)
                return _failure(parameter, e)
            except Exception as e:
                # one broken parameter must not take the batch down with it
                logger.exception("Unexpected error running batch parameter %s", parameter)
                return ParameterResult(
                    parameter=parameter, success=False, error=str(e), code="INTERNAL_ERROR"
                )
        return ParameterResult(parameter=parameter, success=True, data=data)

    tasks = [asyncio.create_task(run_one(p)) for p in parameters]
    done, pending = await asyncio.wait(tasks, timeout=config.batch_timeout)

    for task in pending:
        task.cancel()
    if pending:
        logger.warning(
            "Batch timed out after %ss, cancelled %d of %d parameters",
            config.batch_timeout,
            len(pending),
            len(tasks),
        )
        await asyncio.gather(*pending, return_exceptions=True)

    results = []
    for parameter, task in zip(parameters, tasks):
        if task in done:
            results.append(task.result())
        else:
            results.append(
                _failure(
                    parameter,
                    QueryTimeoutError(f"Batch timed out before '{parameter}' finished"),
                )
            )
    return results


def page_offset(request: BatchQueryRequest, limit: int) -> int:
    return (request.page - 1) * limit


def build_meta(request: BatchQueryRequest, limit: int) -> dict:
    """What was actually honoured, so the ui can tell it apart from what it asked for."""
    return {
        "parameters": list(request.parameters),
        "total_parameters": len(request.parameters),
        "page": request.page,
        "limit": limit,
        "filters_applied": len(request.filters),
    }
