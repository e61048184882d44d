"""
Tests for configuration loading.
"""

import copy
from pathlib import Path

import pytest

from repocontext.config import (
    DEFAULT_CONFIG,
    chunking_fingerprint,
    expand_pattern,
    load_config,
    retention_policy,
)
from repocontext.core.models import RetentionStrategy


class TestLoadConfig:
    def test_defaults(self):
        cfg = load_config(env={})
        assert cfg["chunking"]["max_chunk_size"] == 4000
        assert cfg["corpus"]["cache_ttl_seconds"] == 300
        assert cfg["retrieval"]["top_k"] == 5
        assert "**/*.py" in cfg["include_globs"]
        assert "**/node_modules/**" in cfg["exclude_globs"]

    def test_defaults_are_not_shared(self):
        cfg = load_config(env={})
        cfg["chunking"]["max_chunk_size"] = 1
        assert DEFAULT_CONFIG["chunking"]["max_chunk_size"] == 4000

    def test_env_overrides(self):
        cfg = load_config(env={
            "REPOCONTEXT_CORPUS_LOCATION": "https://cdn.example.com/embeddings.json.gz",
            "REPOCONTEXT_CACHE_TTL_SECONDS": "60",
            "REPOCONTEXT_MAX_CHUNK_SIZE": "2000",
            "REPOCONTEXT_RETENTION_STRATEGY": "count",
            "TARGET_REPO_OWNER": "acme",
        })
        assert cfg["corpus"]["location"] == "https://cdn.example.com/embeddings.json.gz"
        assert cfg["corpus"]["cache_ttl_seconds"] == 60.0
        assert cfg["chunking"]["max_chunk_size"] == 2000
        assert cfg["retention"]["strategy"] == "count"
        assert cfg["pipeline"]["owner"] == "acme"

    def test_invalid_env_value(self):
        with pytest.raises(ValueError):
            load_config(env={"REPOCONTEXT_MAX_CHUNK_SIZE": "big"})

    def test_skip_cleanup_flag(self):
        assert load_config(env={"REPOCONTEXT_SKIP_CLEANUP": "true"})["cleanup"]["enabled"] is False
        assert load_config(env={})["cleanup"]["enabled"] is True

    def test_paths_resolved_against_repo(self, tmp_path):
        cfg = load_config(tmp_path, env={"REPOCONTEXT_FALLBACK_PATH": "/abs/embeddings.json.gz"})
        assert Path(cfg["corpus"]["location"]) == tmp_path / "output" / "embeddings.json.gz"
        assert Path(cfg["pipeline"]["state_path"]) == tmp_path / "output" / "commit-state.json"
        assert cfg["corpus"]["fallback_path"] == "/abs/embeddings.json.gz"
        assert cfg["corpus"]["history_location"] is None
        assert cfg["repo_root"] == str(tmp_path)

    def test_remote_location_not_resolved(self, tmp_path):
        cfg = load_config(tmp_path, env={"REPOCONTEXT_CORPUS_LOCATION": "https://cdn.example.com/e.json.gz"})
        assert cfg["corpus"]["location"] == "https://cdn.example.com/e.json.gz"


class TestDerivedSettings:
    def test_retention_policy(self):
        policy = retention_policy({"retention": {"strategy": "importance", "max_count": "10", "max_age_days": 7}})
        assert policy.strategy is RetentionStrategy.IMPORTANCE
        assert (policy.max_count, policy.max_age_days) == (10, 7.0)

    def test_retention_policy_rejects_unknown_strategy(self):
        with pytest.raises(ValueError):
            retention_policy({"retention": {"strategy": "random"}})

    def test_chunking_fingerprint(self):
        cfg = load_config(env={})
        same = copy.deepcopy(cfg)
        same["retrieval"]["top_k"] = 50
        changed = copy.deepcopy(cfg)
        changed["chunking"]["overlap_percent"] = 0.2
        assert chunking_fingerprint(cfg) == chunking_fingerprint(same)
        assert chunking_fingerprint(cfg) != chunking_fingerprint(changed)


class TestExpandPattern:
    def test_expansions(self):
        assert expand_pattern("*.py") == ["*.py", "**/*.py"]
        assert expand_pattern("venv/**") == ["venv/**", "**/venv/**"]
        assert expand_pattern("**/x") == ["**/x"]
        assert expand_pattern("# comment") == []
        assert expand_pattern(".env") == [".env"]
