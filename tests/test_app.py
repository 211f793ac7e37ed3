import unittest
from unittest import mock

from fastapi import HTTPException
from fastapi.testclient import TestClient
from nml_samples import KEY_A, KEY_E, SAMPLE_NML, TECHNO, WARMUP

import app as app_module
from app import _validate_source_url, app, get_manager
from lib.cache_manager import CollectionManager
from lib.traktor.sources import discard_memory_source, memory_locator

USER = {"X-User-Id": "dj-one"}


class CollectionApiTests(unittest.TestCase):
    def setUp(self):
        self.manager = CollectionManager(maxsize=4, ttl=600)
        app.dependency_overrides[get_manager] = lambda: self.manager
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        discard_memory_source(memory_locator("dj-one"))

    def _upload(self, data=SAMPLE_NML):
        return self.client.post(
            "/api/collection/upload",
            headers=USER,
            files={"file": ("collection.nml", data, "application/xml")},
        )

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["ok"])

    def test_upload_and_sidebar(self):
        resp = self._upload()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"playlist_count": 3, "track_count": 6})

        sidebar = self.client.get("/api/collection/sidebar", headers=USER).json()
        self.assertEqual(sidebar["tree"]["path"], "root")
        self.assertEqual(sidebar["tree"]["children"][0]["name"], "House Sets")

    def test_upload_rejects_garbage(self):
        resp = self._upload(b"definitely not xml")
        self.assertEqual(resp.status_code, 400)

    def test_no_collection_is_404(self):
        resp = self.client.get("/api/collection/sidebar", headers={"X-User-Id": "someone-else"})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"]["type"], "NotFoundError")

    def test_bad_user_id(self):
        resp = self.client.get("/api/collection/sidebar", headers={"X-User-Id": "../etc"})
        self.assertEqual(resp.status_code, 400)

    def test_source_rejects_paths_and_private_hosts(self):
        for source in (
            "../../etc/passwd",
            "/etc/passwd",
            "~/collection.nml",
            "file:///etc/passwd",
            "memory:someone-else",
            "http://example.com/collection.nml",
            "https://127.0.0.1/collection.nml",
            "https://10.0.0.5/collection.nml",
            "https://[::1]/collection.nml",
            "https://localhost/collection.nml",
        ):
            with self.subTest(source=source):
                resp = self.client.post("/api/collection/source", headers=USER, json={"source": source})
                self.assertEqual(resp.status_code, 422)
        self.assertFalse(self.manager.has_instance("dj-one"))

    def test_source_loads_https_url(self):
        fetched = []

        def loader(locator):
            fetched.append(locator)
            return SAMPLE_NML

        self.manager = CollectionManager(loader=loader, maxsize=4, ttl=600)
        resp = self.client.post(
            "/api/collection/source", headers=USER,
            json={"source": " https://files.example.com/collection.nml "},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"playlist_count": 3, "track_count": 6})
        self.assertEqual(fetched, ["https://files.example.com/collection.nml"])

    def test_source_host_allowlist(self):
        with mock.patch.object(app_module, "COLLECTION_SOURCE_HOSTS", {"files.example.com"}):
            self.assertEqual(
                _validate_source_url("https://files.example.com/c.nml"),
                "https://files.example.com/c.nml",
            )
            with self.assertRaises(HTTPException) as ctx:
                _validate_source_url("https://evil.example.net/c.nml")
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertIn("Unsupported URL host", str(ctx.exception.detail))

    def test_tree_mutations_and_error_mapping(self):
        self._upload()

        resp = self.client.post("/api/collection/folders", headers=USER, json={"parent_path": "root", "name": "Crates"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["path"], "root/Crates")

        resp = self.client.post("/api/collection/folders", headers=USER, json={"parent_path": "root", "name": "Crates"})
        self.assertEqual(resp.status_code, 409)

        resp = self.client.post(
            "/api/collection/move", headers=USER,
            json={"source_path": "root/Crates", "target_folder_path": "root/Crates"},
        )
        self.assertEqual(resp.status_code, 422)

        resp = self.client.post(
            "/api/collection/move-batch", headers=USER,
            json={"moves": [{"source": TECHNO, "target": "root/Crates"}]},
        )
        self.assertEqual(resp.json(), {"moved": ["root/Crates/Techno"]})

        resp = self.client.post("/api/collection/delete", headers=USER, json={"paths": ["root/Crates"]})
        self.assertEqual(resp.json(), {"deleted_count": 1})

    def test_download_reflects_changes(self):
        self._upload()
        self.assertEqual(self.client.get("/api/collection/download", headers=USER).content, SAMPLE_NML)

        self.client.post("/api/collection/orphans", headers=USER, json={"target_folder_path": "root"})
        resp = self.client.get("/api/collection/download", headers=USER)
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.content.startswith(b"<?xml"))
        self.assertIn(b"Orphans Generated", resp.content)

    def test_track_and_tag_routes(self):
        self._upload()

        resp = self.client.post(
            "/api/collection/tracks/batch", headers=USER,
            json={"updates": [
                {"key": KEY_A, "fields": {"comment": "fresh"}},
                {"key": "missing", "fields": {"comment": "x"}},
            ]},
        )
        self.assertEqual(resp.json()["updated_count"], 1)
        self.assertEqual(len(resp.json()["errors"]), 1)

        resp = self.client.post(
            "/api/collection/tags/preview", headers=USER,
            json={"playlist_paths": [WARMUP], "tag": "deep"},
        )
        self.assertEqual(resp.json()["would_update"] + resp.json()["already_have_in_selection"], 2)

        resp = self.client.post(
            "/api/collection/tags/apply", headers=USER,
            json={"playlist_paths": [WARMUP], "tag": "deep"},
        )
        self.assertEqual(resp.json(), {"updated_count": 1})

        comments = self.client.get("/api/collection/comments", headers=USER).json()
        self.assertIn("fresh [Deep]", comments["genre"])

    def test_duplicates_routes(self):
        self._upload()
        groups = self.client.get("/api/collection/duplicates", headers=USER).json()
        self.assertEqual(groups["count"], 1)

        resp = self.client.post(
            "/api/collection/duplicates/merge", headers=USER,
            json={"merges": [{"master_key": KEY_A, "redundant_keys": [KEY_E]}]},
        )
        self.assertEqual(resp.json()["merged_count"], 1)

        resp = self.client.post(
            "/api/collection/duplicates/merge", headers=USER,
            json={"merges": [{"master_key": KEY_A, "redundant_keys": [KEY_E]}]},
        )
        self.assertEqual(resp.status_code, 404)

    def test_compare(self):
        tracks = [{"id": "1", "artist": "Burial", "title": "Archangel"}]
        resp = self.client.post(
            "/api/compare",
            json={"source_tracks": tracks, "target_tracks": tracks, "threshold_percent": 100},
        )
        self.assertEqual(resp.json()["stats"]["matched_count"], 1)

        resp = self.client.post(
            "/api/compare",
            json={"source_tracks": tracks, "target_tracks": tracks, "threshold_percent": 150},
        )
        self.assertEqual(resp.status_code, 422)

    def test_compare_playlist(self):
        self._upload()
        resp = self.client.post(
            "/api/collection/compare-playlist", headers=USER,
            json={
                "playlist_path": WARMUP,
                "target_tracks": [{"id": "p1", "artist": "Artist B", "title": "Song B"}],
            },
        )
        body = resp.json()
        self.assertEqual(body["stats"]["matched_count"], 1)
        self.assertEqual(body["matched"][0]["target_track"]["id"], "p1")
        self.assertEqual(len(body["missing_from_target"]), 1)


if __name__ == "__main__":
    unittest.main()
