import unittest

from nml_samples import SAMPLE_NML

from lib.cache_manager import CollectionManager, build_collection_cache_key
from lib.traktor.errors import NotFoundError
from lib.traktor.sources import discard_memory_source, memory_locator


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class CountingLoader:
    def __init__(self, sources):
        self.sources = sources
        self.calls = []

    def __call__(self, locator):
        self.calls.append(locator)
        return self.sources[locator]


class CollectionManagerTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.saved = {}
        self.loader = CountingLoader({"/music/collection.nml": SAMPLE_NML})
        self.manager = CollectionManager(
            loader=self.loader,
            persister=self._persist,
            maxsize=2,
            ttl=60,
            timer=self.clock,
        )

    def tearDown(self):
        for user in ("u1", "u2", "u3"):
            discard_memory_source(memory_locator(user))

    def _persist(self, user_id, locator, data):
        self.saved[locator] = data
        self.loader.sources[locator] = data
        return locator

    def test_cache_key_is_versioned(self):
        self.assertTrue(build_collection_cache_key("u1").startswith("nml:"))
        self.assertTrue(build_collection_cache_key("u1").endswith(":u1"))

    def test_get_service_loads_once(self):
        first = self.manager.get_service("u1", "/music/collection.nml")
        second = self.manager.get_service("u1", "/music/collection.nml")
        third = self.manager.service_for("u1")

        self.assertIs(first, second)
        self.assertIs(first, third)
        self.assertEqual(self.loader.calls, ["/music/collection.nml"])
        self.assertTrue(self.manager.has_instance("u1"))

    def test_unknown_user_without_source(self):
        with self.assertRaises(NotFoundError):
            self.manager.service_for("nobody")

    def test_ttl_expiry_reloads_from_persisted_source(self):
        service = self.manager.get_service("u1", "/music/collection.nml")
        service.create_folder("root", "Crates")

        self.clock.now = 61
        self.assertFalse(self.manager.has_instance("u1"))

        reloaded = self.manager.service_for("u1")
        self.assertIsNot(reloaded, service)
        self.assertIn("root/Crates", reloaded.document.tree)
        self.assertEqual(len(self.loader.calls), 2)

    def test_access_refreshes_ttl(self):
        self.manager.get_service("u1", "/music/collection.nml")
        self.clock.now = 50
        self.manager.service_for("u1")
        self.clock.now = 100
        self.assertTrue(self.manager.has_instance("u1"))

    def test_maxsize_evicts(self):
        self.manager.set_from_memory("u1", SAMPLE_NML)
        self.manager.set_from_memory("u2", SAMPLE_NML)
        self.manager.set_from_memory("u3", SAMPLE_NML)

        cached = [u for u in ("u1", "u2", "u3") if self.manager.has_instance(u)]
        self.assertEqual(len(cached), 2)
        self.assertTrue(self.manager.has_instance("u3"))

    def test_invalidate_forces_reparse(self):
        service = self.manager.get_service("u1", "/music/collection.nml")
        self.manager.invalidate("u1")
        self.assertFalse(self.manager.has_instance("u1"))
        self.assertIsNot(self.manager.service_for("u1"), service)

    def test_failed_persist_drops_instance(self):
        service = self.manager.get_service("u1", "/music/collection.nml")

        def broken(user_id, locator, data):
            raise OSError("read-only filesystem")

        service._persister = broken
        with self.assertRaises(OSError):
            service.create_folder("root", "Crates")

        self.assertFalse(self.manager.has_instance("u1"))
        reloaded = self.manager.service_for("u1")
        self.assertNotIn("root/Crates", reloaded.document.tree)

    def test_set_from_memory_replaces_instance(self):
        old = self.manager.get_service("u1", "/music/collection.nml")
        new = self.manager.set_from_memory("u1", SAMPLE_NML)

        self.assertIsNot(old, new)
        self.assertIs(self.manager.service_for("u1"), new)
        self.assertEqual(self.manager.source_of("u1"), memory_locator("u1"))

    def test_bad_upload_keeps_previous_instance(self):
        service = self.manager.set_from_memory("u1", SAMPLE_NML)
        with self.assertRaises(ValueError):
            self.manager.set_from_memory("u1", b"<nope")
        self.assertIs(self.manager.service_for("u1"), service)

    def test_memory_source_survives_eviction(self):
        manager = CollectionManager(maxsize=1, ttl=60, timer=self.clock)
        service = manager.set_from_memory("u1", SAMPLE_NML)
        service.create_folder("root", "Crates")
        manager.set_from_memory("u2", SAMPLE_NML)
        self.assertFalse(manager.has_instance("u1"))

        reloaded = manager.service_for("u1")
        self.assertIn("root/Crates", reloaded.document.tree)

    def test_forget_drops_memory_upload(self):
        manager = CollectionManager(maxsize=2, ttl=60, timer=self.clock)
        manager.set_from_memory("u1", SAMPLE_NML)
        manager.forget("u1")
        with self.assertRaises(NotFoundError):
            manager.service_for("u1")

    def test_users_are_isolated(self):
        a = self.manager.set_from_memory("u1", SAMPLE_NML)
        b = self.manager.set_from_memory("u2", SAMPLE_NML)
        a.create_folder("root", "Only A")
        self.assertNotIn("root/Only A", b.document.tree)


if __name__ == "__main__":
    unittest.main()
