import tempfile
import unittest
import xml.etree.ElementTree as ET
from pathlib import Path
from unittest import mock

from nml_samples import (
    DANGLING_NML,
    KEY_A,
    KEY_B,
    KEY_D,
    SAMPLE_NML,
    SMART,
    TECHNO,
    WARMUP,
)

from lib.traktor.errors import CorruptionError
from lib.traktor.models import SmartList
from lib.traktor.parser import (
    XML_DECLARATION,
    load_collection_nml,
    parse_collection,
    serialize_collection,
)


def _entry_for(root, file_name):
    for entry in root.find("COLLECTION").findall("ENTRY"):
        if entry.find("LOCATION").get("FILE") == file_name:
            return entry
    raise AssertionError(f"no ENTRY for {file_name}")


class TraktorParserTests(unittest.TestCase):
    def test_reads_track_fields(self):
        document = parse_collection(SAMPLE_NML)
        record = document.store.get(KEY_A)

        self.assertEqual(record.title, "Song A")
        self.assertEqual(record.artist, "Artist A")
        self.assertEqual(record.album, "Album One")
        self.assertEqual(record.comment, "8A - 124")
        self.assertEqual(record.genre, "House")
        self.assertEqual(record.musical_key, "8A")
        self.assertEqual(record.rating, "255")
        self.assertEqual(record.bpm, 124.0)
        self.assertEqual(record.cue_points, 1)
        self.assertEqual(record.filepath, KEY_A)
        self.assertEqual(len(document.store), 6)

    def test_collection_order_is_document_order(self):
        document = parse_collection(SAMPLE_NML)
        self.assertEqual(document.store.keys()[:2], [KEY_A, KEY_B])

    def test_rejects_non_nml(self):
        with self.assertRaises(ValueError):
            parse_collection(b"<DJ_PLAYLISTS></DJ_PLAYLISTS>")
        with self.assertRaises(ValueError):
            parse_collection(b"not xml at all")

    def test_size_limit(self):
        with mock.patch("lib.traktor.parser.MAX_NML_SIZE_BYTES", 10):
            with self.assertRaises(OverflowError):
                parse_collection(SAMPLE_NML)

    def test_dangling_playlist_entry_is_corruption(self):
        with self.assertRaises(CorruptionError) as ctx:
            parse_collection(DANGLING_NML)
        self.assertEqual(len(ctx.exception.meta["dangling"]), 1)

    def test_missing_root_folder_is_wrapped(self):
        nml = (
            b'<NML VERSION="19"><COLLECTION ENTRIES="0"></COLLECTION><PLAYLISTS>'
            b'<NODE TYPE="PLAYLIST" NAME="Loose"><PLAYLIST ENTRIES="0" TYPE="LIST" UUID="z"></PLAYLIST></NODE>'
            b'</PLAYLISTS></NML>'
        )
        document = parse_collection(nml)
        self.assertIn("root/Loose", document.tree)

    def test_round_trip_without_changes(self):
        document = parse_collection(SAMPLE_NML)
        data = serialize_collection(document)

        self.assertTrue(data.startswith(XML_DECLARATION.encode("utf-8")))
        again = parse_collection(data)
        self.assertEqual(again.tree.paths(), document.tree.paths())
        self.assertEqual(again.store.keys(), document.store.keys())
        for before, after in zip(document.store, again.store):
            self.assertEqual(before.to_row(), after.to_row())
        self.assertEqual(again.tree.resolve(TECHNO).track_keys, [KEY_B, KEY_D])

    def test_unknown_attributes_and_smartlists_survive(self):
        document = parse_collection(SAMPLE_NML)
        document.store.upsert_fields(KEY_A, {"comment": "edited"})
        document.tree.create_playlist("root", "Fresh", [KEY_A])
        data = serialize_collection(document)

        root = ET.fromstring(data)
        entry = _entry_for(root, "a.mp3")
        self.assertEqual(entry.get("AUDIO_ID"), "AbCa.mp3")
        self.assertEqual(entry.get("MODIFIED_DATE"), "2023/5/1")
        self.assertEqual(entry.find("INFO").get("COMMENT"), "edited")
        self.assertEqual(entry.find("INFO").get("IMPORT_DATE"), "2023/1/1")
        self.assertIsNotNone(entry.find("CUE_V2"))
        self.assertIsNotNone(root.find("HEAD"))
        self.assertIsNotNone(root.find("INDEXING"))

        again = parse_collection(data)
        self.assertIsInstance(again.tree.resolve(SMART), SmartList)
        self.assertIn(b"SEARCH_EXPRESSION", data)
        self.assertEqual(again.tree.resolve("root/Fresh").track_keys, [KEY_A])
        self.assertEqual(again.store.get(KEY_A).comment, "edited")

    def test_cleared_field_removes_attribute(self):
        document = parse_collection(SAMPLE_NML)
        document.store.upsert_fields(KEY_A, {"comment": "", "bpm": 126.5})
        root = ET.fromstring(serialize_collection(document))

        entry = _entry_for(root, "a.mp3")
        self.assertIsNone(entry.find("INFO").get("COMMENT"))
        self.assertEqual(entry.find("TEMPO").get("BPM"), "126.500000")

    def test_playlist_counts_follow_tree_edits(self):
        document = parse_collection(SAMPLE_NML)
        document.tree.delete_nodes([WARMUP])
        root = ET.fromstring(serialize_collection(document))

        top = root.find("PLAYLISTS").find("NODE")
        self.assertEqual(top.get("NAME"), "$ROOT")
        house = top.find("SUBNODES").find("NODE")
        self.assertEqual(house.find("SUBNODES").get("COUNT"), "1")

    def test_keyless_playlist_entries_are_dropped_on_save(self):
        source = ET.fromstring(SAMPLE_NML)
        techno = next(n for n in source.iter("NODE") if n.get("NAME") == "Techno")
        playlist = techno.find("PLAYLIST")
        playlist.insert(0, ET.Element("ENTRY"))
        playlist.append(ET.Element("ENTRY"))

        document = parse_collection(ET.tostring(source))
        self.assertEqual(document.tree.resolve(TECHNO).track_keys, [KEY_B, KEY_D])

        root = ET.fromstring(serialize_collection(document))
        saved = next(n for n in root.iter("NODE") if n.get("NAME") == "Techno").find("PLAYLIST")
        keys = [e.find("PRIMARYKEY").get("KEY") for e in saved.findall("ENTRY")]
        self.assertEqual(keys, [KEY_B, KEY_D])
        self.assertEqual(saved.get("ENTRIES"), "2")

    def test_load_collection_nml_from_disk(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "collection.nml"
            path.write_bytes(SAMPLE_NML)
            document = load_collection_nml(path)
        self.assertEqual(len(document.store), 6)

        with self.assertRaises(FileNotFoundError):
            load_collection_nml(Path("/nonexistent/collection.nml"))


if __name__ == "__main__":
    unittest.main()
