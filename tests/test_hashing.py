"""
Unit tests for canonical rendering and content hashes.
"""

from datetime import date

from app.featuremap.modules.structure.hashing import content_hash, is_pin_list, stable_stringify


class TestStableStringify:
    def test_keys_sorted_at_every_level(self):
        assert stable_stringify({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_scalars(self):
        assert stable_stringify(None) == "null"
        assert stable_stringify(True) == "true"
        assert stable_stringify(1) == "1"
        assert stable_stringify("1") == '"1"'
        assert stable_stringify(date(2024, 1, 2)) == '"2024-01-02"'

    def test_plain_lists_keep_their_order(self):
        assert stable_stringify([2, 1]) == "[2,1]"
        assert stable_stringify([1, 2]) != stable_stringify([2, 1])

    def test_pin_lists_are_sorted_by_child_id(self):
        pins = [{"child_id": "b", "version_number": 1}, {"child_id": "a", "version_number": 3}]
        assert stable_stringify(pins) == '[{"child_id":"a","version_number":3},{"child_id":"b","version_number":1}]'

    def test_empty_list_is_not_a_pin_list(self):
        assert is_pin_list([]) is False
        assert is_pin_list([{"child_id": "a"}, {"other": 1}]) is False


class TestContentHash:
    def test_sha256_hex(self):
        digest = content_hash({"name": "x"})
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_key_order_does_not_matter(self):
        assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})

    def test_types_are_distinguished(self):
        hashes = {
            content_hash({"v": 1}),
            content_hash({"v": "1"}),
            content_hash({"v": True}),
            content_hash({"v": None}),
        }
        assert len(hashes) == 4

    def test_null_differs_from_missing_key(self):
        assert content_hash({"a": 1, "b": None}) != content_hash({"a": 1})

    def test_pin_order_does_not_matter(self):
        a = {"name": "m", "feature_pins": [{"child_id": "f1", "version_number": 1}, {"child_id": "f2", "version_number": 2}]}
        b = {"name": "m", "feature_pins": [{"child_id": "f2", "version_number": 2}, {"child_id": "f1", "version_number": 1}]}
        assert content_hash(a) == content_hash(b)

    def test_pinned_version_number_matters(self):
        a = {"feature_pins": [{"child_id": "f1", "version_number": 1}]}
        b = {"feature_pins": [{"child_id": "f1", "version_number": 2}]}
        assert content_hash(a) != content_hash(b)
