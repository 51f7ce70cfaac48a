"""
Concurrent chain record creation.

Many threads register invoices for the same business at once.  Sequence
numbers must stay contiguous and every record must link to its
predecessor, whether the callers share a registry (in-process lock) or
use separate ones (database serialization only).

Run with: pytest tests/concurrency/test_chain_concurrency.py -v
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from sqlalchemy import func, select

from verifactu_kernel.models.chain_record import ChainRecord
from verifactu_kernel.services.chain_registry import ChainRegistry

pytestmark = pytest.mark.slow

THREADS = 8


def _run_concurrently(calls):
    barrier = Barrier(len(calls), timeout=30)

    def _call(fn):
        barrier.wait()
        return fn()

    with ThreadPoolExecutor(max_workers=len(calls)) as executor:
        return list(executor.map(_call, calls))


class TestConcurrentCreation:

    def test_shared_registry_assigns_contiguous_sequences(
        self, registry, invoice_source, invoice_mapping, register_invoices, business_id
    ):
        register_invoices(business_id, 2)
        for n in range(3, 3 + THREADS):
            invoice_source.add(business_id, invoice_mapping(invoice_id=f"INV-{n}", number=f"F2024-{n:04d}"))

        views = _run_concurrently([
            (lambda n=n: registry.get_or_create(business_id, f"INV-{n}"))
            for n in range(3, 3 + THREADS)
        ])

        assert sorted(v.sequence_number for v in views) == list(range(3, 3 + THREADS))
        assert registry.verify_chain(business_id).valid

    def test_separate_registries_serialize_in_the_database(
        self, session_factory, invoice_source, invoice_mapping, clock, business_id
    ):
        for n in range(1, 1 + THREADS):
            invoice_source.add(business_id, invoice_mapping(invoice_id=f"INV-{n}", number=f"F2024-{n:04d}"))
        registries = [
            ChainRegistry(session_factory, invoice_source, clock=clock, render_qr=False)
            for _ in range(THREADS)
        ]

        views = _run_concurrently([
            (lambda r=r, n=n: r.get_or_create(business_id, f"INV-{n}"))
            for n, r in enumerate(registries, start=1)
        ])

        assert sorted(v.sequence_number for v in views) == list(range(1, 1 + THREADS))
        report = registries[0].verify_chain(business_id)
        assert report.valid
        assert report.cached_sequence_number == THREADS

    def test_same_invoice_from_many_threads_creates_one_record(
        self, session_factory, invoice_source, invoice_mapping, clock, business_id
    ):
        invoice_source.add(business_id, invoice_mapping())
        registries = [
            ChainRegistry(session_factory, invoice_source, clock=clock, render_qr=False)
            for _ in range(THREADS)
        ]

        views = _run_concurrently([(lambda r=r: r.get_or_create(business_id, "INV-1")) for r in registries])

        assert {v.id for v in views} == {views[0].id}
        with session_factory() as session:
            count = session.execute(select(func.count()).select_from(ChainRecord)).scalar_one()
        assert count == 1
