"""Shared fixtures for the agenda test suite.

Every test gets a fresh temp-file SQLite DatabaseManager, a FixedClock
parked at 2025-11-19 08:00 and, when needed, a seeded catalog:

- workers: Ana (50%), Bruna (40%), Carla (no percentage -> default 50%)
- client: Maria, Joana
- services: Corte (60 min, 80.00), Escova (45 min, 50.00), Manicure (40 min, 35.00)
- payment methods: dinheiro, pix (0%), cartao_credito (3%), cartao_debito (1.99%),
  plus the reserved credit / promotional codes
"""
import os
import shutil
import tempfile
from datetime import datetime
from types import SimpleNamespace

import pytest

from business.appointments import AppointmentService
from business.billing import BillingService
from business.clock import FixedClock
from business.packages import PackageService
from database import DatabaseManager


@pytest.fixture
def temp_db():
    """Yield a fresh DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="agenda-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.create_tables()

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def clock():
    """Clock parked at 08:00 on the sample day."""
    return FixedClock(datetime(2025, 11, 19, 8, 0, 0))


@pytest.fixture
def seeded(temp_db):
    """Seed reference data and return the ids by name."""
    ana = temp_db.workers.get_or_create("Ana", 50)
    bruna = temp_db.workers.get_or_create("Bruna", 40)
    carla = temp_db.workers.get_or_create("Carla")
    maria = temp_db.clients.get_or_create("Maria", "11999990000")
    joana = temp_db.clients.get_or_create("Joana")
    corte = temp_db.services.get_or_create("Corte", 60, 80)
    escova = temp_db.services.get_or_create("Escova", 45, 50)
    manicure = temp_db.services.get_or_create("Manicure", 40, 35)
    for code, name, fee in [
        ("dinheiro", "Dinheiro", 0),
        ("pix", "PIX", 0),
        ("cartao_credito", "Cartão de Crédito", 3),
        ("cartao_debito", "Cartão de Débito", 1.99),
        ("credit", "Fiado", 0),
        ("promotional", "Troca/Grátis", 0),
    ]:
        temp_db.payment_methods.get_or_create(code, name, fee)

    return SimpleNamespace(
        ana=ana.id, bruna=bruna.id, carla=carla.id,
        maria=maria.id, joana=joana.id,
        corte=corte.id, escova=escova.id, manicure=manicure.id,
    )


@pytest.fixture
def appointments(temp_db, clock):
    return AppointmentService(temp_db, clock)


@pytest.fixture
def packages(temp_db, clock):
    return PackageService(temp_db, clock)


@pytest.fixture
def billing(temp_db, clock, packages):
    return BillingService(temp_db, clock, packages)


@pytest.fixture
def book(appointments, seeded):
    """Helper: book an appointment for Ana/Maria and return its dict."""
    def _book(start="2025-11-19 09:00:00", worker=None, client=None, **extra):
        data = {
            "worker_id": worker or seeded.ana,
            "client_id": client or seeded.maria,
            "start_time": start,
            "service_description": "Corte",
            "duration_minutes": 60,
            "estimated_value": 100,
        }
        data.update(extra)
        return appointments.create(data)["appointment"]

    return _book
