"""
Apply/Delete primitives - idempotent writes against a store.

``create_or_update`` converges one object onto the state produced by a
mutator, ``apply_batch`` runs several of those in order (each possibly on a
different store), and ``ensure_deleted`` drives a set of objects towards
absence without waiting for the store to finish deleting them.
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from errors import ErrorKind, OperatorError
from kube.objects import KubeObject
from kube.store import Store

logger = logging.getLogger(__name__)

# Default wait before re-checking objects whose deletion was accepted
DELETION_REQUEUE_AFTER = 10

MutateFn = Callable[[KubeObject], None]


class OperationResult(Enum):
    """Outcome of a create_or_update call."""

    UNCHANGED = "unchanged"
    CREATED = "created"
    UPDATED = "updated"


@dataclass
class ApplyOperation:
    """
    One step of an apply batch.

    ``obj`` only needs its identity set; everything else must be filled in
    by ``mutate``. ``store`` overrides the batch's store for this step.
    """

    obj: KubeObject
    mutate: Optional[MutateFn] = None
    store: Optional[Store] = None


def _noop(obj: KubeObject) -> None:
    pass


def _mutate(obj: KubeObject, mutate: MutateFn) -> None:
    key = obj.key
    api_version = obj.api_version
    mutate(obj)
    if obj.key != key or obj.api_version != api_version:
        raise OperatorError.fatal(
            f"mutate function changed the identity of {key} to {obj.key}"
        )


async def create_or_update(
    store: Store, obj: KubeObject, mutate: Optional[MutateFn] = None
) -> OperationResult:
    """
    Create or update ``obj`` so that it matches what ``mutate`` produces.

    The object is fetched from the store; if it does not exist, the mutator
    runs on ``obj`` and the result is created. If it exists, the mutator runs
    on the stored version and the object is updated only if the mutator
    changed something. On return ``obj`` holds the stored state.

    Raises:
        OperatorError: From the store, or FATAL if the mutator changed the
            object's identity. Nothing is written if the mutator raises.
    """
    mutate = mutate or _noop
    try:
        existing = await store.get_object(obj)
    except OperatorError as e:
        if e.kind != ErrorKind.NOT_FOUND:
            raise
        _mutate(obj, mutate)
        created = await store.create(obj)
        obj.replace(created.data)
        logger.debug(f"Created {obj.key}")
        return OperationResult.CREATED

    before = copy.deepcopy(existing.data)
    _mutate(existing, mutate)
    if existing.data == before:
        obj.replace(existing.data)
        return OperationResult.UNCHANGED

    updated = await store.update(existing)
    obj.replace(updated.data)
    logger.debug(f"Updated {obj.key}")
    return OperationResult.UPDATED


async def apply_batch(
    store: Store, *operations: ApplyOperation
) -> List[OperationResult]:
    """
    Run ``create_or_update`` for each operation in order.

    Stops at the first failing operation and re-raises its error unchanged.
    Every operation is idempotent, so retrying the whole batch is always
    safe.
    """
    results = []
    for op in operations:
        op_store = op.store if op.store is not None else store
        results.append(await create_or_update(op_store, op.obj, op.mutate))
    return results


async def ensure_deleted(
    store: Store,
    *objects: KubeObject,
    requeue_after: float = DELETION_REQUEUE_AFTER,
) -> None:
    """
    Request deletion of every object and report the ones that may remain.

    Objects that are already gone, or whose kind the store does not serve,
    count as deleted. Objects whose deletion was accepted may still exist, so
    they are reported in a REMAINING_RESOURCES error. Call again with the same
    objects until this returns without raising.

    Raises:
        OperatorError: REMAINING_RESOURCES listing pending objects, or the
            store's error for anything other than NotFound/NotYetAvailable.
    """
    remaining = []
    for obj in objects:
        try:
            await store.delete(obj)
        except OperatorError as e:
            if e.kind in (ErrorKind.NOT_FOUND, ErrorKind.NOT_YET_AVAILABLE):
                continue
            logger.error(f"Failed to delete {obj.key}: {e}")
            raise
        remaining.append(obj.key)

    if remaining:
        raise OperatorError.remaining_resources(remaining, requeue_after)
