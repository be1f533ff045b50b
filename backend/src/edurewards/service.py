"""
Wiring of the engine components.

Lambda handlers call ``get_services()``; the components are built once per
container on first use (DynamoDB store, catalog from CATALOG_PATH or the
catalog table). Tests install their own set with ``use_services``.
"""
from dataclasses import dataclass
from typing import Optional

from .catalog import TaskCatalog
from .config import config
from .dynamo import DynamoStore
from .ledger import RewardLedger
from .proofs import ProofSubmissionHandler
from .redemption import RedemptionIssuer, RedemptionVerifier
from .sweeper import ExpirySweeper
from .tracker import TaskProgressTracker
from .utils import SystemClock


@dataclass
class Services:
    store: object
    catalog: TaskCatalog
    ledger: RewardLedger
    proofs: ProofSubmissionHandler
    tracker: TaskProgressTracker
    issuer: RedemptionIssuer
    verifier: RedemptionVerifier
    sweeper: ExpirySweeper


def build_services(store=None, clock=None, catalog: Optional[TaskCatalog] = None) -> Services:
    """
    Assemble all components over one store and one clock.

    Args:
        store: Row store, defaults to DynamoStore
        clock: Object with now() -> aware datetime, defaults to SystemClock
        catalog: Task catalog, defaults to CATALOG_PATH or TASK_CATALOG_TABLE
    """
    store = store or DynamoStore()
    clock = clock or SystemClock()
    if catalog is None:
        if config.CATALOG_PATH:
            catalog = TaskCatalog.from_json(config.CATALOG_PATH)
        else:
            catalog = TaskCatalog.from_table(store, config.TASK_CATALOG_TABLE)

    ledger = RewardLedger(store, clock)
    proofs = ProofSubmissionHandler(clock)
    verifier = RedemptionVerifier(store, ledger, clock)
    return Services(
        store=store,
        catalog=catalog,
        ledger=ledger,
        proofs=proofs,
        tracker=TaskProgressTracker(store, catalog, ledger, proofs, clock),
        issuer=RedemptionIssuer(store, ledger, clock),
        verifier=verifier,
        sweeper=ExpirySweeper(store, verifier, clock),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the container-wide Services."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def use_services(services: Optional[Services]) -> None:
    """Replace (or with None, reset) the container-wide Services."""
    global _services
    _services = services
