from __future__ import annotations

from keystone_etl.wow_specs import classes_with_specs, fallback_class_and_spec, get_class_and_spec


class TestSpecTable:
    def test_known_spec(self):
        assert get_class_and_spec(71) == ("Warrior", "Arms", 1)
        assert get_class_and_spec(250) == ("Death Knight", "Blood", 6)

    def test_unknown_spec(self):
        assert get_class_and_spec(9999) is None

    def test_fallback_fills_missing_names(self):
        assert fallback_class_and_spec("", "", 257) == ("Priest", "Holy")
        assert fallback_class_and_spec("Priest", "", 258) == ("Priest", "Shadow")

    def test_fallback_keeps_stored_names(self):
        assert fallback_class_and_spec("Warrior", "Fury", 71) == ("Warrior", "Fury")
        assert fallback_class_and_spec("", "", None) == ("", "")
        assert fallback_class_and_spec("", "", 9999) == ("", "")

    def test_classes_ordered_by_id(self):
        classes = classes_with_specs()
        assert [c[0] for c in classes] == list(range(1, 12))
        warrior = classes[0]
        assert warrior[1:] == ("warrior", "Warrior", ["Arms", "Fury", "Protection"])
        assert classes[5][1] == "death_knight"
