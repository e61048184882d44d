"""Configuration management for repocontext."""

from __future__ import annotations

import copy
import hashlib
import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from ..core.models import RetentionPolicy


DEFAULT_INCLUDE_PATTERNS: List[str] = [
    "*.py", "*.js", "*.ts", "*.tsx", "*.jsx", "*.mjs", "*.cjs",
    "*.go", "*.java", "*.kt", "*.cs",
    "*.rb", "*.php", "*.rs",
    "*.c", "*.h", "*.cpp", "*.hpp",
    "*.swift",
    "*.md", "*.txt", "*.yaml", "*.yml", "*.json", "*.sql",
]

DEFAULT_EXCLUDE_PATTERNS: List[str] = [
    ".git/**",
    "node_modules/**",
    "dist/**",
    "build/**",
    ".venv/**",
    "venv/**",
    "__pycache__/**",
    "output/**",
    "target/**",
    ".next/**",
    ".idea/**",
    ".vscode/**",
    "*.lock",
    ".env",
    ".env.*",
]

DEFAULT_CONFIG: Dict = {
    "max_file_size_kb": 500,
    "chunking": {
        "max_chunk_size": 4000,
        "min_chunk_size": 200,
        "overlap_percent": 0.08,
        "count_tokens": True,
    },
    "embedding": {
        "backend": "sentence_transformers",
        "sentence_transformers_model": "sentence-transformers/all-MiniLM-L6-v2",
        "attempts": 2,
        "batch_size": 32,
    },
    "corpus": {
        # Local path or http(s) URL of the code/commit snapshot
        "location": "output/embeddings.json.gz",
        # None derives it from `location`
        "history_location": None,
        "fallback_path": None,
        "cache_ttl_seconds": 300,
        "fetch_timeout_seconds": 10,
    },
    "retrieval": {
        "top_k": 5,
        "default_mode": "all",
        "min_score": None,
        "small_candidate_threshold": 256,
        # Bump retrieval_count of history hits returned by `repocontext query`
        "record_retrievals": True,
    },
    "retention": {
        "strategy": "hybrid",
        "max_count": 1000,
        "max_age_days": 180,
    },
    "cleanup": {
        "enabled": True,
        "code_max_age_days": 180,
        "max_size_mb": 10,
        "prune_deleted_files": True,
    },
    "pipeline": {
        "state_path": "output/commit-state.json",
        "interaction_log": "output/interactions.jsonl",
        "max_commits": 100,
        "owner": "",
        "repo": "",
    },
}

# env var -> (config path, type)
ENV_OVERRIDES = {
    "REPOCONTEXT_CORPUS_LOCATION": (("corpus", "location"), str),
    "REPOCONTEXT_HISTORY_LOCATION": (("corpus", "history_location"), str),
    "REPOCONTEXT_FALLBACK_PATH": (("corpus", "fallback_path"), str),
    "REPOCONTEXT_CACHE_TTL_SECONDS": (("corpus", "cache_ttl_seconds"), float),
    "REPOCONTEXT_FETCH_TIMEOUT_SECONDS": (("corpus", "fetch_timeout_seconds"), float),
    "REPOCONTEXT_MAX_CHUNK_SIZE": (("chunking", "max_chunk_size"), int),
    "REPOCONTEXT_MIN_CHUNK_SIZE": (("chunking", "min_chunk_size"), int),
    "REPOCONTEXT_OVERLAP_PERCENT": (("chunking", "overlap_percent"), float),
    "REPOCONTEXT_RETENTION_STRATEGY": (("retention", "strategy"), str),
    "REPOCONTEXT_RETENTION_MAX_COUNT": (("retention", "max_count"), int),
    "REPOCONTEXT_RETENTION_MAX_AGE_DAYS": (("retention", "max_age_days"), float),
    "REPOCONTEXT_MAX_SIZE_MB": (("cleanup", "max_size_mb"), float),
    "REPOCONTEXT_EMBEDDING_MODEL": (("embedding", "sentence_transformers_model"), str),
    "REPOCONTEXT_STATE_PATH": (("pipeline", "state_path"), str),
    "REPOCONTEXT_INTERACTION_LOG": (("pipeline", "interaction_log"), str),
    "TARGET_REPO_OWNER": (("pipeline", "owner"), str),
    "TARGET_REPO_NAME": (("pipeline", "repo"), str),
}


def expand_pattern(pattern: str) -> List[str]:
    """Expand pattern to include both root and nested versions.

    Examples:
        '*.py' -> ['*.py', '**/*.py']
        'venv/**' -> ['venv/**', '**/venv/**']
    """
    pattern = pattern.strip()
    if not pattern or pattern.startswith("#"):
        return []

    if pattern.startswith("**/"):
        return [pattern]

    if pattern.startswith("*."):
        return [pattern, "**/" + pattern]

    if "/**" in pattern:
        return [pattern, "**/" + pattern]

    return [pattern]


def _expand_patterns(patterns: List[str]) -> List[str]:
    """Expand and deduplicate patterns while preserving order."""
    out: List[str] = []
    seen: set[str] = set()
    for p in patterns:
        for ep in expand_pattern(p):
            if ep not in seen:
                seen.add(ep)
                out.append(ep)
    return out


def _set_path(cfg: Dict, path: tuple, value) -> None:
    node = cfg
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


def load_config(repo: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> Dict:
    """Load configuration.

    Returns a copy of the defaults with environment overrides applied and
    expanded include/exclude patterns. Relative paths are resolved against
    `repo` when given.
    """
    environ = os.environ if env is None else env
    config = copy.deepcopy(DEFAULT_CONFIG)

    for var, (path, cast) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            _set_path(config, path, cast(raw))
        except ValueError as e:
            raise ValueError(f"Invalid value for {var}: {raw!r}") from e

    if environ.get("REPOCONTEXT_SKIP_CLEANUP", "").lower() in ("1", "true", "yes"):
        config["cleanup"]["enabled"] = False

    config["include_globs"] = _expand_patterns(DEFAULT_INCLUDE_PATTERNS)
    config["exclude_globs"] = _expand_patterns(DEFAULT_EXCLUDE_PATTERNS)

    if repo is not None:
        config["repo_root"] = str(repo)
        for section, key in (("corpus", "location"), ("corpus", "history_location"),
                             ("corpus", "fallback_path"), ("pipeline", "state_path"),
                             ("pipeline", "interaction_log")):
            config[section][key] = _resolve_local(repo, config[section][key])

    return config


def _resolve_local(repo: Path, location: Optional[str]) -> Optional[str]:
    if not location or "://" in location or os.path.isabs(location):
        return location
    return str(Path(repo) / location)


def retention_policy(cfg: Dict) -> RetentionPolicy:
    """Build the retention policy from the `retention` section."""
    section = cfg.get("retention", {})
    return RetentionPolicy(
        strategy=section.get("strategy", "hybrid"),
        max_count=int(section.get("max_count", 1000)),
        max_age_days=float(section.get("max_age_days", 180)),
    )


def chunking_fingerprint(cfg: Dict) -> str:
    """Fingerprint of the settings that change how files are chunked and embedded."""
    return cfg_fingerprint({"chunking": cfg.get("chunking", {}), "embedding": cfg.get("embedding", {})})


def cfg_fingerprint(cfg: Dict) -> str:
    """Generate fingerprint hash for config."""
    payload = json.dumps(cfg, sort_keys=True, ensure_ascii=False, default=str).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()
