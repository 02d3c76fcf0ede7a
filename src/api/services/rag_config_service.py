"""
RAG Config Service

Manages pipeline defaults for retrieval, post-processing stages, caching,
generation, and resilience. Per-request switches override these values.
"""
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..paths import config_defaults_dir, data_state_dir, ensure_local_file

logger = logging.getLogger(__name__)


@dataclass
class RetrievalConfig:
    enable_document_search: bool = True
    enable_web_search: bool = True
    max_document_chunks: int = 5
    max_web_results: int = 5
    min_score: float = 0.7
    hard_min_score: float = 0.6
    citation_min_score: float = 0.6
    requery_on_low_results: bool = True
    use_adaptive_threshold: bool = False
    min_results: int = 3
    max_results: int = 10
    enable_query_expansion: bool = False
    query_expansion_strategy: str = "hybrid"
    max_expansion_terms: int = 5
    enable_keyword_search: bool = False
    keyword_weight: float = 0.3
    semantic_weight: float = 0.7
    fusion_strategy: str = "weighted"
    rrf_k: int = 60


@dataclass
class RerankingConfig:
    enabled: bool = False
    strategy: str = "hybrid"
    top_k: int = 20
    max_results: int = 10
    min_score: float = 0.3
    api_model: str = "jina-reranker-v2-base-multilingual"
    api_base_url: str = "https://api.jina.ai/v1/rerank"
    api_key: str = ""
    timeout_seconds: int = 20


@dataclass
class ProcessingConfig:
    enable_deduplication: bool = True
    deduplication_threshold: float = 0.95
    enable_diversity_filter: bool = False
    diversity_lambda: float = 0.7
    enable_dynamic_limits: bool = False
    enable_adaptive_context_selection: bool = False
    enable_relevance_ordering: bool = True
    ordering_strategy: str = "hybrid"
    enable_context_compression: bool = False
    compression_strategy: str = "hybrid"
    max_context_tokens: int = 8000
    enable_context_summarization: bool = False
    enable_source_prioritization: bool = True
    enable_token_budgeting: bool = True


@dataclass
class CacheConfig:
    enabled: bool = True
    similarity_enabled: bool = True
    similarity_threshold: float = 0.85
    default_ttl_seconds: int = 3600
    web_ttl_seconds: int = 1800
    prefix: str = "rag"
    max_scan_keys: int = 1000


@dataclass
class GenerationConfig:
    model: str = "gpt-3.5-turbo"
    temperature: float = 0.7
    max_tokens: int = 1000
    history_limit: int = 10
    timeout_seconds: int = 60
    off_topic_precheck: bool = True
    enable_few_shot: bool = False
    followup_count: int = 4


@dataclass
class ResilienceConfig:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter: float = 0.1
    failure_threshold: int = 5
    reset_timeout_seconds: int = 60
    half_open_max_calls: int = 3


@dataclass
class RagConfig:
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    reranking: RerankingConfig = field(default_factory=RerankingConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)


_SECTIONS = {
    'retrieval': RetrievalConfig,
    'reranking': RerankingConfig,
    'processing': ProcessingConfig,
    'cache': CacheConfig,
    'generation': GenerationConfig,
    'resilience': ResilienceConfig,
}


def _build_section(section_cls, data: Optional[Dict[str, Any]]):
    """Build one config section, ignoring unknown keys and keeping defaults for missing ones."""
    data = data or {}
    kwargs = {}
    for item in fields(section_cls):
        if item.name in data and data[item.name] is not None:
            kwargs[item.name] = data[item.name]
    return section_cls(**kwargs)


class RagConfigService:
    """Service for managing RAG pipeline configuration"""

    def __init__(self, config_path: Optional[str] = None):
        self.defaults_path: Optional[Path] = None
        if config_path is None:
            self.defaults_path = config_defaults_dir() / "rag_config.yaml"
            config_path = data_state_dir() / "rag_config.yaml"
        else:
            config_path = Path(config_path)

        self.config_path = config_path
        self._ensure_config_exists()
        self.config = self._load_config()

    def _ensure_config_exists(self) -> None:
        """Create default config file if it doesn't exist"""
        if not self.config_path.exists():
            initial_text = yaml.safe_dump(asdict(RagConfig()), allow_unicode=True, sort_keys=False)
            ensure_local_file(
                local_path=self.config_path,
                defaults_path=self.defaults_path,
                initial_text=initial_text,
            )
            logger.info("Created default RAG config at %s", self.config_path)

    def _load_config(self) -> RagConfig:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}

            return RagConfig(**{
                name: _build_section(section_cls, data.get(name))
                for name, section_cls in _SECTIONS.items()
            })
        except Exception as e:
            logger.error("Failed to load RAG config: %s", e)
            return RagConfig()

    def reload_config(self):
        """Reload configuration from file"""
        self.config = self._load_config()

    def save_config(self, updates: Dict):
        """Save updated configuration to file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}

            for section_key, section_updates in updates.items():
                if section_key not in _SECTIONS or not isinstance(section_updates, dict):
                    continue
                section = data.setdefault(section_key, {})
                for key, value in section_updates.items():
                    if value is not None:
                        section[key] = value

            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(data, f, allow_unicode=True, sort_keys=False)

            self.reload_config()
            logger.info("RAG config updated successfully")
        except Exception as e:
            logger.error("Failed to save RAG config: %s", e)
            raise

    @staticmethod
    def _flat_mapping() -> Dict[str, tuple]:
        mapping = {}
        for section_name, section_cls in _SECTIONS.items():
            for item in fields(section_cls):
                mapping[f"{section_name}_{item.name}"] = (section_name, item.name)
        return mapping

    def get_flat_config(self) -> Dict:
        """Return config as flat dictionary for API response"""
        flat = {}
        for flat_key, (section, key) in self._flat_mapping().items():
            flat[flat_key] = getattr(getattr(self.config, section), key)
        return flat

    def save_flat_config(self, flat_updates: Dict):
        """Save from flat dictionary format (from API)"""
        nested: Dict[str, Dict[str, Any]] = {}
        mapping = self._flat_mapping()
        for flat_key, value in flat_updates.items():
            if flat_key in mapping and value is not None:
                section, key = mapping[flat_key]
                nested.setdefault(section, {})[key] = value

        if nested:
            self.save_config(nested)
