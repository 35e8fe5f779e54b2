"""
conftest.py — Shared pytest fixtures for the RebarFlow backend test suite.

Pure engines (normalizer, validation rules, scoring, state machine, response
parsing) need no fixtures. Pipeline, cascade and dispatch tests run against a
throwaway SQLite database (aiosqlite) created per test under ``tmp_path``;
JSON columns fall back from JSONB to JSON on SQLite.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``rebarflow.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
from typing import Iterable, Optional, Tuple

import pytest
import pytest_asyncio

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any rebarflow imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from rebarflow.db import Base
from rebarflow.models.orm_models import (
    ExtractedRow, ExtractionSession, Machine, MachineCapability, MachineQueueItem,
    ProductionTask, Role, Tenant, User,
)
from rebarflow.services.perf_monitor import tracker


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    """
    File-backed SQLite engine with the full schema.

    pysqlite/aiosqlite manage BEGIN themselves and break SAVEPOINT; the two
    listeners hand transaction control back to SQLAlchemy so nested
    transactions behave as on PostgreSQL.
    """
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rebarflow_test.db'}")

    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_tracker():
    """Pipeline metrics are a process-wide singleton."""
    tracker.reset()
    yield
    tracker.reset()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

VALID_ROW = {
    "dwg": "S-101",
    "mark": "A1001",
    "quantity": 12,
    "bar_size": "15M",
    "grade": "400W",
    "shape_type": None,
    "total_length_mm": 3000.0,
}


class Seeder:
    """Small factory for the rows tests keep needing. Every helper commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def tenant(self, name: str = "Rebar Shop Ltd") -> Tenant:
        tenant = Tenant(name=name)
        self.db.add(tenant)
        await self.db.commit()
        return tenant

    async def user(self, tenant_id: str, role_name: Optional[str] = "Supervisor") -> User:
        role_id = None
        if role_name:
            role = Role(name=role_name)
            self.db.add(role)
            await self.db.flush()
            role_id = role.id
        user = User(tenant_id=tenant_id, email=f"{role_name or 'user'}-{tenant_id[:8]}@example.com", role_id=role_id)
        self.db.add(user)
        await self.db.commit()
        return user

    async def session(
        self,
        tenant_id: str,
        rows: Iterable[dict] = (),
        status: str = "extracted",
        name: str = "Level 2 slab",
        customer: Optional[str] = "Acme Construction",
    ) -> ExtractionSession:
        session = ExtractionSession(
            tenant_id=tenant_id, name=name, customer=customer, status=status,
            site_address="12 Harbour St",
        )
        self.db.add(session)
        await self.db.flush()
        for index, data in enumerate(rows, start=1):
            self.db.add(ExtractedRow(session_id=session.id, row_index=index, **data))
        await self.db.commit()
        return session

    async def machine(
        self,
        tenant_id: str,
        name: str,
        status: str = "idle",
        capabilities: Iterable[Tuple[str, str]] = (("cut", "15M"),),
        current_run_id: Optional[str] = None,
    ) -> Machine:
        machine = Machine(tenant_id=tenant_id, name=name, status=status, current_run_id=current_run_id)
        self.db.add(machine)
        await self.db.flush()
        for process, bar_code in capabilities:
            self.db.add(MachineCapability(
                tenant_id=tenant_id, machine_id=machine.id, process=process, bar_code=bar_code,
            ))
        await self.db.commit()
        return machine

    async def task(
        self,
        tenant_id: str,
        task_type: str = "cut",
        bar_code: str = "15M",
        status: str = "pending",
        locked_to_machine_id: Optional[str] = None,
    ) -> ProductionTask:
        task = ProductionTask(
            tenant_id=tenant_id,
            task_type=task_type,
            bar_code=bar_code,
            setup_key=f"{bar_code}_{'bend' if task_type == 'bend' else 'straight'}",
            qty_required=4,
            status=status,
            locked_to_machine_id=locked_to_machine_id,
        )
        self.db.add(task)
        await self.db.commit()
        return task

    async def queue_item(
        self,
        tenant_id: str,
        machine_id: str,
        position: int,
        status: str = "queued",
    ) -> MachineQueueItem:
        task = await self.task(tenant_id, status="queued" if status in ("queued", "running") else "done")
        item = MachineQueueItem(
            tenant_id=tenant_id, task_id=task.id, machine_id=machine_id, position=position, status=status,
        )
        self.db.add(item)
        await self.db.commit()
        return item


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest_asyncio.fixture
async def tenant(seed):
    return await seed.tenant()


@pytest.fixture
def valid_row():
    return dict(VALID_ROW)
