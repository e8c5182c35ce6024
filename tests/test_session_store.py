"""
Unit tests for session record persistence.
"""
import asyncio
import json
import logging
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from quizme.exceptions import SessionStoreError
from quizme.models import SESSION_DEFAULTS
from quizme.session_store import InMemorySessionStore, JsonFileSessionStore


class SessionStoreContract:
    """Behaviour shared by every store implementation."""

    def create_store(self):
        raise NotImplementedError

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.store = self.create_store()

    def tearDown(self):
        logging.disable(logging.NOTSET)

    async def test_get_unknown_session_returns_defaults(self):
        record = await self.store.get("default")

        self.assertEqual(record, SESSION_DEFAULTS)

    async def test_get_returns_a_copy(self):
        record = await self.store.get("default")
        record['user_answers'].append(1)

        self.assertEqual((await self.store.get("default"))['user_answers'], [])
        self.assertEqual(SESSION_DEFAULTS['user_answers'], [])

    async def test_set_merges_updates(self):
        await self.store.set("default", {'state': 'generating', 'epoch': 1})
        await self.store.set("default", {'error': None, 'source_title': "Title"})

        record = await self.store.get("default")
        self.assertEqual(record['state'], 'generating')
        self.assertEqual(record['epoch'], 1)
        self.assertEqual(record['source_title'], "Title")

    async def test_sessions_are_isolated(self):
        await self.store.set("a", {'state': 'ready'})

        self.assertEqual((await self.store.get("b"))['state'], 'idle')

    async def test_expected_epoch_guard(self):
        await self.store.set("default", {'state': 'generating', 'epoch': 2})

        stale = await self.store.set("default", {'state': 'ready'}, expected_epoch=1)
        current = await self.store.set("default", {'explanations': ["x"]}, expected_epoch=2)

        self.assertFalse(stale)
        self.assertTrue(current)
        record = await self.store.get("default")
        self.assertEqual(record['state'], 'generating')
        self.assertEqual(record['explanations'], ["x"])

    async def test_clear(self):
        await self.store.set("default", {'state': 'error', 'error': "boom"})

        await self.store.clear("default")
        await self.store.clear("never-used")

        self.assertEqual(await self.store.get("default"), SESSION_DEFAULTS)

    async def test_concurrent_updates_are_not_lost(self):
        async def write(i):
            await self.store.set(f"session-{i}", {'epoch': i})

        await asyncio.gather(*(write(i) for i in range(20)))

        for i in range(20):
            self.assertEqual((await self.store.get(f"session-{i}"))['epoch'], i)


class TestInMemorySessionStore(SessionStoreContract, unittest.IsolatedAsyncioTestCase):
    """Test cases for InMemorySessionStore."""

    def create_store(self):
        return InMemorySessionStore()


class TestJsonFileSessionStore(SessionStoreContract, unittest.IsolatedAsyncioTestCase):
    """Test cases for JsonFileSessionStore."""

    def create_store(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "nested" / "session.json"
        return JsonFileSessionStore(str(self.path))

    def tearDown(self):
        super().tearDown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_survives_reopen(self):
        await self.store.set("default", {'state': 'in_progress', 'user_answers': [1, None, 3], 'epoch': 4})

        reopened = JsonFileSessionStore(str(self.path))
        record = await reopened.get("default")

        self.assertEqual(record['state'], 'in_progress')
        self.assertEqual(record['user_answers'], [1, None, 3])
        self.assertEqual(record['epoch'], 4)

    async def test_file_contains_snake_case_record(self):
        await self.store.set("default", {'state': 'ready', 'quiz_data': {'questions': []}})

        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        self.assertEqual(data['default']['state'], 'ready')
        self.assertIn('current_question_index', data['default'])
        self.assertEqual(list(self.path.parent.glob("*.tmp")), [])

    async def test_invalid_json_starts_fresh(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("{ invalid json", encoding='utf-8')

        self.assertEqual(await self.store.get("default"), SESSION_DEFAULTS)
        self.assertTrue(await self.store.set("default", {'state': 'idle'}))

    async def test_non_object_file_starts_fresh(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("[1, 2, 3]", encoding='utf-8')

        self.assertEqual(await self.store.get("default"), SESSION_DEFAULTS)

    async def test_write_failure_raises_store_error(self):
        with patch('quizme.session_store.os.replace', side_effect=PermissionError("read-only")):
            with self.assertRaises(SessionStoreError):
                await self.store.set("default", {'state': 'ready'})

        self.assertEqual(list(self.path.parent.glob("*.tmp")), [])


if __name__ == '__main__':
    unittest.main()
