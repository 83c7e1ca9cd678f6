from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest import IsolatedAsyncioTestCase, mock

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from monami.config import Settings
from monami.models import (
    Base,
    Conversation,
    Guest,
    GuestConversion,
    MealPlan,
    Profile,
    SavedRecipe,
)
from monami.services.conversion import (
    ConversionOutcome,
    RequestProvenance,
    convert_guest,
)
from monami.services.guest_cache import GuestTokenCache
from monami.services.identity import IdentityResolver


class GuestConversionTestCase(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)
        self.cache = GuestTokenCache(ttl_seconds=300)

        async with self.Session() as session:
            session.add_all(
                [
                    Profile(id="user-42", email="cook@example.com"),
                    Profile(id="user-99", email="other@example.com"),
                    Guest(id="g1", conversion_token="s1"),
                    Guest(id="g2", conversion_token="s2"),
                ]
            )
            await session.flush()
            session.add_all(
                [
                    Conversation(id="c1", title="Tacos", owner_guest_id="g1"),
                    Conversation(id="c2", title="Ramen", owner_guest_id="g1"),
                    SavedRecipe(id="r1", title="Shakshuka", owner_guest_id="g1"),
                    Conversation(id="c3", title="Not mine", owner_guest_id="g2"),
                    MealPlan(id="m1", name="Week 1", owner_profile_id="user-99"),
                ]
            )
            await session.commit()
        self.cache.put("g1", "s1")

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def _convert(self, user_id: str, guest_id: str, secret: str, **kwargs):
        async with self.Session() as session:
            return await convert_guest(
                session,
                user_id=user_id,
                guest_id=guest_id,
                secret=secret,
                cache=self.cache,
                **kwargs,
            )

    async def _owners(self, model, record_id: str):
        async with self.Session() as session:
            row = await session.get(model, record_id)
            return row.owner_guest_id, row.owner_profile_id

    async def _audit_count(self) -> int:
        async with self.Session() as session:
            result = await session.execute(select(func.count()).select_from(GuestConversion))
            return int(result.scalar_one())

    async def _guest(self, guest_id: str) -> Guest:
        async with self.Session() as session:
            return await session.get(Guest, guest_id)

    async def test_convert_moves_every_owned_record(self):
        result = await self._convert(
            "user-42",
            "g1",
            "s1",
            provenance=RequestProvenance(ip_address="203.0.113.7", user_agent="pytest"),
        )

        self.assertEqual(result.outcome, ConversionOutcome.CONVERTED)
        self.assertEqual(result.records_transferred, 3)
        self.assertEqual(await self._owners(Conversation, "c1"), (None, "user-42"))
        self.assertEqual(await self._owners(Conversation, "c2"), (None, "user-42"))
        self.assertEqual(await self._owners(SavedRecipe, "r1"), (None, "user-42"))
        # Other owners untouched.
        self.assertEqual(await self._owners(Conversation, "c3"), ("g2", None))
        self.assertEqual(await self._owners(MealPlan, "m1"), (None, "user-99"))

        guest = await self._guest("g1")
        self.assertTrue(guest.converted_to_profile)
        self.assertEqual(guest.converted_user_id, "user-42")
        self.assertIsNotNone(guest.converted_at)

        async with self.Session() as session:
            audit = (await session.execute(select(GuestConversion))).scalar_one()
        self.assertEqual(audit.guest_id, "g1")
        self.assertEqual(audit.converted_user_id, "user-42")
        self.assertEqual(audit.ip_address, "203.0.113.7")
        self.assertEqual(audit.user_agent, "pytest")
        self.assertEqual(audit.records_transferred, 3)

    async def test_convert_invalidates_cache_entry(self):
        await self._convert("user-42", "g1", "s1")
        self.assertIsNone(self.cache.get("g1"))

    async def test_repeat_and_conflicting_conversions(self):
        first = await self._convert("user-42", "g1", "s1")
        guest_after_first = await self._guest("g1")

        again = await self._convert("user-42", "g1", "s1")
        other = await self._convert("user-99", "g1", "s1")

        self.assertEqual(first.outcome, ConversionOutcome.CONVERTED)
        self.assertEqual(again.outcome, ConversionOutcome.ALREADY_CONVERTED_SAME_USER)
        self.assertEqual(again.records_transferred, 0)
        self.assertEqual(other.outcome, ConversionOutcome.ALREADY_CONVERTED_DIFFERENT_USER)
        self.assertEqual(await self._audit_count(), 1)
        guest = await self._guest("g1")
        self.assertEqual(guest.converted_user_id, "user-42")
        self.assertEqual(guest.converted_at, guest_after_first.converted_at)
        self.assertEqual(await self._owners(Conversation, "c1"), (None, "user-42"))

    async def test_wrong_secret_changes_nothing(self):
        result = await self._convert("user-42", "g1", "wrong")

        self.assertEqual(result.outcome, ConversionOutcome.INVALID_SECRET)
        self.assertEqual(await self._owners(Conversation, "c1"), ("g1", None))
        self.assertFalse((await self._guest("g1")).converted_to_profile)
        self.assertEqual(await self._audit_count(), 0)
        self.assertEqual(self.cache.get("g1"), "s1")

    async def test_empty_secret_is_invalid(self):
        result = await self._convert("user-42", "g1", "")
        self.assertEqual(result.outcome, ConversionOutcome.INVALID_SECRET)

    async def test_non_ascii_secret_is_invalid_not_an_error(self):
        result = await self._convert("user-42", "g1", "sé")
        self.assertEqual(result.outcome, ConversionOutcome.INVALID_SECRET)
        self.assertEqual(await self._owners(Conversation, "c1"), ("g1", None))
        self.assertEqual(await self._audit_count(), 0)

    async def test_unknown_guest(self):
        result = await self._convert("user-42", "missing", "s1")
        self.assertEqual(result.outcome, ConversionOutcome.GUEST_NOT_FOUND)
        self.assertEqual(await self._audit_count(), 0)

    async def test_storage_failure_rolls_back_everything(self):
        async with self.Session() as session:
            with mock.patch.object(
                session, "commit", new=mock.AsyncMock(side_effect=RuntimeError("storage unavailable"))
            ):
                with self.assertRaises(RuntimeError):
                    await convert_guest(
                        session, user_id="user-42", guest_id="g1", secret="s1", cache=self.cache
                    )

        self.assertEqual(await self._owners(Conversation, "c1"), ("g1", None))
        self.assertEqual(await self._owners(SavedRecipe, "r1"), ("g1", None))
        self.assertFalse((await self._guest("g1")).converted_to_profile)
        self.assertEqual(await self._audit_count(), 0)
        self.assertEqual(self.cache.get("g1"), "s1")

    async def test_converted_guest_cookie_no_longer_resolves(self):
        resolver = IdentityResolver(Settings(environment="dev"), self.cache)
        async with self.Session() as session:
            before = await resolver.resolve(session, None, "g1:s1")
        self.assertEqual(before.owner.guest_id, "g1")

        await self._convert("user-42", "g1", "s1")

        async with self.Session() as session:
            after = await resolver.resolve(session, None, "g1:s1")
        self.assertNotEqual(after.owner.guest_id, "g1")
        self.assertIsNotNone(after.cookie)

    async def test_conversion_during_resolver_read_is_not_recached(self):
        self.cache.clear()
        resolver = IdentityResolver(Settings(environment="dev"), self.cache)

        async with self.Session() as session:
            real_get = session.get

            async def get_then_convert(model, key, **kwargs):
                row = await real_get(model, key, **kwargs)
                # the conversion commits after the read but before the cache write
                converted = await self._convert("user-42", "g1", "s1")
                self.assertEqual(converted.outcome, ConversionOutcome.CONVERTED)
                return row

            with mock.patch.object(session, "get", new=get_then_convert):
                await resolver.resolve(session, None, "g1:s1")

        self.assertIsNone(self.cache.get("g1"))
        async with self.Session() as session:
            after = await resolver.resolve(session, None, "g1:s1")
        self.assertNotEqual(after.owner.guest_id, "g1")
        self.assertIsNotNone(after.cookie)


class ReadGate:
    """Holds every caller until ``parties`` of them have arrived."""

    def __init__(self, parties: int) -> None:
        self.parties = parties
        self.arrived = 0
        self.opened = asyncio.Event()

    async def wait(self) -> None:
        self.arrived += 1
        if self.arrived >= self.parties:
            self.opened.set()
        await asyncio.wait_for(self.opened.wait(), timeout=5)


class ConcurrentConversionTestCase(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        # Separate connections per session, unlike the shared in-memory database.
        url = f"sqlite+aiosqlite:///{Path(tmpdir.name) / 'conversion.db'}"
        self.engine = create_async_engine(url, future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)
        self.cache = GuestTokenCache(ttl_seconds=300)

        async with self.Session() as session:
            session.add_all([Profile(id="user-42"), Guest(id="g1", conversion_token="s1")])
            await session.flush()
            session.add_all(
                [
                    Conversation(id="c1", title="Tacos", owner_guest_id="g1"),
                    SavedRecipe(id="r1", title="Shakshuka", owner_guest_id="g1"),
                ]
            )
            await session.commit()

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def _convert_after_gate(self, gate: ReadGate):
        async with self.Session() as session:
            real_execute = session.execute
            calls = []

            async def execute(statement, *args, **kwargs):
                result = await real_execute(statement, *args, **kwargs)
                calls.append(statement)
                if len(calls) == 1:
                    # both attempts have read the guest as unconverted
                    await gate.wait()
                return result

            with mock.patch.object(session, "execute", new=execute):
                return await convert_guest(
                    session, user_id="user-42", guest_id="g1", secret="s1", cache=self.cache
                )

    async def test_concurrent_retries_convert_exactly_once(self):
        gate = ReadGate(parties=2)
        results = await asyncio.gather(self._convert_after_gate(gate), self._convert_after_gate(gate))

        outcomes = sorted(result.outcome.value for result in results)
        self.assertEqual(
            outcomes,
            sorted(
                [
                    ConversionOutcome.CONVERTED.value,
                    ConversionOutcome.ALREADY_CONVERTED_SAME_USER.value,
                ]
            ),
        )
        self.assertEqual(sorted(result.records_transferred for result in results), [0, 2])

        async with self.Session() as session:
            audits = (await session.execute(select(GuestConversion))).scalars().all()
            conversation = await session.get(Conversation, "c1")
        self.assertEqual(len(audits), 1)
        self.assertEqual(audits[0].records_transferred, 2)
        self.assertEqual(conversation.owner_profile_id, "user-42")
        self.assertIsNone(conversation.owner_guest_id)


class OwnershipInvariantTestCase(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)
        async with self.Session() as session:
            session.add_all([Profile(id="user-1"), Guest(id="g1", conversion_token="s1")])
            await session.commit()

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def test_owned_row_needs_exactly_one_owner(self):
        for owners in ({}, {"owner_guest_id": "g1", "owner_profile_id": "user-1"}):
            with self.subTest(owners=owners):
                async with self.Session() as session:
                    session.add(Conversation(title="orphan", **owners))
                    with self.assertRaises(IntegrityError):
                        await session.commit()

    async def test_single_owner_rows_are_accepted(self):
        async with self.Session() as session:
            session.add_all(
                [
                    Conversation(title="guest", owner_guest_id="g1"),
                    Conversation(title="profile", owner_profile_id="user-1"),
                ]
            )
            await session.commit()
            count = (await session.execute(select(func.count()).select_from(Conversation))).scalar_one()
        self.assertEqual(count, 2)


if __name__ == "__main__":
    unittest.main()
