"""
Tests for EnvironmentSet — set operations and the dash-joined persisted form.
Run: pytest tests/test_environment_set.py -v
"""
from itertools import combinations, permutations

import pytest

from console_backend.publishing.environments import DEFAULT_ENVIRONMENT_CODES, EnvironmentSet, normalize_env
from console_backend.publishing.models import Module, ModuleKindName


class TestSetOperations:

    def test_add_then_remove_restores_original(self):
        envs = EnvironmentSet(["stg", "prod"])
        envs.add("qa")
        envs.remove("qa")
        assert envs == {"stg", "prod"}

    def test_remove_absent_is_noop(self):
        envs = EnvironmentSet(["prod"])
        envs.remove("stg")
        assert envs.codes() == ["prod"]

    def test_remove_last_leaves_empty(self):
        envs = EnvironmentSet(["stg"])
        envs.remove("stg")
        assert envs.is_empty()
        assert envs.serialize() == ""

    def test_add_is_idempotent_and_keeps_order(self):
        envs = EnvironmentSet()
        envs.add("prod")
        envs.add("stg")
        envs.add("PROD")
        assert envs.codes() == ["prod", "stg"]
        assert len(envs) == 2

    def test_contains_is_case_insensitive(self):
        envs = EnvironmentSet(["stg-qa"])
        assert envs.contains("STG-QA")
        assert "stg-qa" in envs
        assert "qa" not in envs

    def test_is_exactly(self):
        assert EnvironmentSet(["stg"]).is_exactly("stg")
        assert not EnvironmentSet(["stg", "prod"]).is_exactly("stg")

    def test_copy_is_independent(self):
        original = EnvironmentSet(["stg"])
        clone = original.copy()
        clone.add("prod")
        assert original.codes() == ["stg"]

    def test_invalid_code_rejected(self):
        with pytest.raises(ValueError):
            normalize_env("st g")
        with pytest.raises(ValueError):
            EnvironmentSet(["-prod"])


class TestPersistedForm:

    def test_serialize_joins_with_dash(self):
        assert EnvironmentSet(["dev", "prod"]).serialize() == "dev-prod"
        assert EnvironmentSet(["stg-qa", "prod"]).serialize() == "stg-qa-prod"

    def test_serialize_doubles_dash_where_codes_would_merge(self):
        assert EnvironmentSet(["stg", "prod"]).serialize() == "stg--prod"
        assert EnvironmentSet(["dev", "stg", "prod"]).serialize() == "dev-stg--prod"
        assert EnvironmentSet(["stg", "qa"]).serialize() == "stg--qa"

    def test_every_default_combination_reads_back_in_order(self):
        for size in range(1, len(DEFAULT_ENVIRONMENT_CODES) + 1):
            for subset in combinations(DEFAULT_ENVIRONMENT_CODES, size):
                for ordering in permutations(subset):
                    stored = EnvironmentSet(ordering).serialize()
                    assert EnvironmentSet.parse(stored).codes() == list(ordering), stored

    def test_custom_known_codes_read_back(self):
        known = ["stg-uk", "stg", "uk", "prod"]
        envs = EnvironmentSet(["stg", "uk", "prod"])
        stored = envs.serialize(known)
        assert stored == "stg--uk-prod"
        assert EnvironmentSet.parse(stored, known).codes() == ["stg", "uk", "prod"]

    def test_unknown_dashed_code_cannot_be_stored(self):
        with pytest.raises(ValueError):
            EnvironmentSet(["stg-uk"]).serialize()

    def test_parse_simple_codes(self):
        assert EnvironmentSet.parse("dev-prod").codes() == ["dev", "prod"]

    def test_single_dash_string_reads_known_dashed_code(self):
        # strings written with one dash between stg and prod read back as stg-prod
        assert EnvironmentSet.parse("stg-prod").codes() == ["stg-prod"]
        assert EnvironmentSet.parse("stg--prod").codes() == ["stg", "prod"]

    def test_parse_prefers_known_dashed_codes(self):
        assert EnvironmentSet.parse("stg-qa-prod").codes() == ["stg-qa", "prod"]
        assert EnvironmentSet.parse("dev-stg-prod").codes() == ["dev", "stg-prod"]

    def test_parse_with_custom_known_codes(self):
        parsed = EnvironmentSet.parse("stg-uk-prod", known=["stg-uk", "prod"])
        assert parsed.codes() == ["stg-uk", "prod"]

    def test_parse_empty(self):
        assert EnvironmentSet.parse("").is_empty()
        assert EnvironmentSet.parse(None).is_empty()

    def test_module_accepts_list_and_string(self):
        from_list = Module(kind=ModuleKindName.SKU, store_id="roku", product_id="svod", deployed_to=["stg"])
        from_str = Module(kind=ModuleKindName.SKU, store_id="roku", product_id="svod", deployed_to="dev-stg")
        assert from_list.deployed_to.codes() == ["stg"]
        assert from_str.deployed_to == {"dev", "stg"}

    def test_module_json_dump_is_a_list(self):
        module = Module(kind=ModuleKindName.SKU, store_id="roku", product_id="svod", deployed_to=["stg", "prod"])
        assert module.model_dump(mode="json")["deployed_to"] == ["stg", "prod"]
