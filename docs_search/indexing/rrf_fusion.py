"""Reciprocal Rank Fusion (RRF) implementation for combining multiple ranking systems"""

from collections import defaultdict
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..config import config
from ..errors import FusionInputMismatch
from ..models.search import SearchResult
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

MISSING_RANK = float("inf")


class ReciprocalRankFusion:
    """
    Reciprocal Rank Fusion (RRF) algorithm for combining multiple ranking systems.

    RRF formula: score = sum(weight_i / (k + rank_i)) for each ranking system
    where:
    - weight_i: weight for ranking system i
    - k: smoothing parameter (flattens the pull of any single very high rank, typically 60)
    - rank_i: rank position in system i (1-indexed)

    Only rank positions are used, never the raw scores of the input lists, so
    lexical and vector scores of different scales are never mixed.

    Ties are broken by the best rank an entity holds in any system, then by
    its ranks taken in system-name order, then by first appearance. The
    result does not depend on the order in which systems are passed in.
    """

    def __init__(
        self,
        k_parameter: int = 60,
        weights: Optional[Dict[str, float]] = None,
    ):
        """
        Initialize RRF fusion engine.

        Args:
            k_parameter: Smoothing parameter (default: 60)
            weights: Dictionary of weights for each ranking system
                    e.g., {"lexical": 1.0, "vector": 1.0}
                    Systems missing from the dict get weight 1.0
        """
        weights = dict(weights or {})
        validation = self.validate_parameters(k_parameter, weights)
        if not validation["valid"]:
            raise ValueError(f"Invalid RRF parameters: {', '.join(validation['errors'])}")

        self.k_parameter = k_parameter
        self.weights = weights
        logger.debug(f"RRF initialized: k={k_parameter}, weights={self.weights}")

    @classmethod
    def from_config(cls) -> "ReciprocalRankFusion":
        return cls(
            k_parameter=config.rrf_k_parameter,
            weights={"lexical": config.rrf_lexical_weight, "vector": config.rrf_vector_weight},
        )

    def fuse_results(
        self,
        lexical_results: Sequence[SearchResult],
        vector_results: Sequence[SearchResult],
        k_parameter: Optional[int] = None,
    ) -> List[SearchResult]:
        """Fuse a lexical and a vector ranking"""
        return self.fuse({"lexical": lexical_results, "vector": vector_results}, k_parameter=k_parameter)

    def fuse(
        self,
        result_sets: Mapping[str, Sequence[SearchResult]],
        k_parameter: Optional[int] = None,
        top_k: Optional[int] = None,
    ) -> List[SearchResult]:
        """
        Fuse multiple ranking result sets using Reciprocal Rank Fusion.

        Args:
            result_sets: Dictionary where keys are ranking system names (e.g., 'lexical', 'vector')
                        and values are result lists sorted by rank
            k_parameter: Override of k for this call
            top_k: Number of top results to return (None = all)

        Returns:
            Fused SearchResult list sorted by RRF score (highest first)

        Raises:
            FusionInputMismatch: On duplicate ids within one list or mixed corpora
        """
        k = self.k_parameter if k_parameter is None else k_parameter
        systems = sorted(result_sets)
        self._check_inputs(result_sets)

        # Rank of every entity in every system, plus first-seen representative
        ranks: Dict[object, Dict[str, int]] = defaultdict(dict)
        representatives: Dict[object, SearchResult] = {}
        first_seen: Dict[object, int] = {}
        traces: Dict[object, Dict[str, float]] = defaultdict(dict)

        for system in self._appearance_order(result_sets):
            for rank, result in enumerate(result_sets[system], start=1):
                key = result.entity_id
                ranks[key][system] = rank
                traces[key].update(result.score_trace)
                traces[key][f"{system}_rank"] = rank
                if key not in representatives:
                    representatives[key] = result
                    first_seen[key] = len(first_seen)

        fused: List[Tuple[tuple, SearchResult]] = []
        for key, entity_ranks in ranks.items():
            # Accumulate in system-name order so float sums do not depend on input order
            score = 0.0
            for system in systems:
                if system in entity_ranks:
                    score += self.weights.get(system, 1.0) / (k + entity_ranks[system])

            # Single-source entities keep their label (lexical, vector or fallback)
            source_method = "hybrid" if len(entity_ranks) > 1 else representatives[key].source_method
            trace = {**traces[key], "rrf_score": score}
            result = representatives[key].with_score(score, source_method=source_method, **trace)

            sort_key = (
                -score,
                min(entity_ranks.values()),
                tuple(entity_ranks.get(system, MISSING_RANK) for system in systems),
                first_seen[key],
            )
            fused.append((sort_key, result))

        fused.sort(key=lambda item: item[0])
        fused_results = [result for _, result in fused]
        if top_k is not None:
            fused_results = fused_results[:top_k]

        top_score_str = f"{fused_results[0].relevance_score:.6f}" if fused_results else "N/A"
        logger.debug(
            f"RRF fusion complete: combined {len(systems)} systems, "
            f"{len(ranks)} unique documents, returned {len(fused_results)} results, "
            f"top score: {top_score_str}"
        )

        return fused_results

    @staticmethod
    def _appearance_order(result_sets: Mapping[str, Sequence[SearchResult]]) -> List[str]:
        """Lexical first so its display fields win, then the rest by name"""
        systems = sorted(result_sets)
        if "lexical" in systems:
            systems.remove("lexical")
            systems.insert(0, "lexical")
        return systems

    @staticmethod
    def _check_inputs(result_sets: Mapping[str, Sequence[SearchResult]]) -> None:
        corpora = set()
        for system, results in result_sets.items():
            seen = set()
            for result in results:
                if result.entity_id in seen:
                    raise FusionInputMismatch(
                        f"Duplicate entity {result.entity_id!r} in '{system}' ranking"
                    )
                seen.add(result.entity_id)
                corpora.add(result.corpus)
        if len(corpora) > 1:
            raise FusionInputMismatch(f"Cannot fuse rankings from different corpora: {sorted(corpora)}")

    # ------------------------------------------------------------------
    # Tuning and analysis helpers
    # ------------------------------------------------------------------

    @staticmethod
    def optimal_k(lexical_count: int, vector_count: int) -> int:
        """
        Suggested k for the given result set sizes

        Smaller k sharpens the preference for top ranks when few results are
        available; larger k flattens it for long lists.
        """
        total = lexical_count + vector_count
        if total < 10:
            return 30
        if total > 50:
            return 90
        return 60

    @staticmethod
    def validate_parameters(k: int, weights: Mapping[str, float]) -> dict:
        errors = []
        if k < 1:
            errors.append("RRF parameter k must be >= 1")
        if k > 1000:
            errors.append("RRF parameter k should be <= 1000 for practical use")
        if any(weight < 0 for weight in weights.values()):
            errors.append("RRF weights must be non-negative")
        if weights and sum(weights.values()) == 0:
            errors.append("At least one RRF weight must be > 0")
        return {"valid": not errors, "errors": errors}

    def update_parameters(self, k: int, weights: Optional[Dict[str, float]] = None) -> None:
        validation = self.validate_parameters(k, weights if weights is not None else self.weights)
        if not validation["valid"]:
            raise ValueError(f"Invalid RRF parameters: {', '.join(validation['errors'])}")

        self.k_parameter = k
        if weights is not None:
            self.weights = dict(weights)
        logger.debug(f"RRF parameters updated: k={k}, weights={self.weights}")

    def get_parameters(self) -> dict:
        return {"k": self.k_parameter, "weights": dict(self.weights)}

    @staticmethod
    def analyze_fusion(
        lexical_results: Sequence[SearchResult],
        vector_results: Sequence[SearchResult],
        fused_results: Sequence[SearchResult],
    ) -> dict:
        """Overlap and source distribution of a fused ranking"""
        lexical_ids = {r.entity_id for r in lexical_results}
        vector_ids = {r.entity_id for r in vector_results}
        overlap = len(lexical_ids & vector_ids)

        lexical_only = sum(1 for r in fused_results if r.entity_id in lexical_ids and r.entity_id not in vector_ids)
        vector_only = sum(1 for r in fused_results if r.entity_id in vector_ids and r.entity_id not in lexical_ids)
        hybrid = sum(1 for r in fused_results if r.entity_id in lexical_ids and r.entity_id in vector_ids)

        scores = [r.relevance_score for r in fused_results]
        top_source = "none"
        if fused_results:
            top_id = fused_results[0].entity_id
            if top_id in lexical_ids and top_id in vector_ids:
                top_source = "hybrid"
            elif top_id in lexical_ids:
                top_source = "lexical"
            elif top_id in vector_ids:
                top_source = "vector"

        return {
            "total_input_results": len(lexical_results) + len(vector_results),
            "total_output_results": len(fused_results),
            "overlap": overlap,
            "overlap_percentage": (overlap / len(fused_results)) * 100 if fused_results else 0.0,
            "lexical_only": lexical_only,
            "vector_only": vector_only,
            "hybrid": hybrid,
            "top_result_source": top_source,
            "score_distribution": {
                "min": min(scores) if scores else 0.0,
                "max": max(scores) if scores else 0.0,
                "avg": sum(scores) / len(scores) if scores else 0.0,
            },
        }

    @staticmethod
    def normalize_scores(results: Sequence[SearchResult]) -> List[SearchResult]:
        """Min-max scale scores to [0, 1]; all-equal scores become 1.0"""
        if not results:
            return []

        scores = [r.relevance_score for r in results]
        min_score, max_score = min(scores), max(scores)
        score_range = max_score - min_score
        if score_range == 0:
            return [r.with_score(1.0) for r in results]
        return [r.with_score((r.relevance_score - min_score) / score_range) for r in results]

    @staticmethod
    def apply_boosts(results: Sequence[SearchResult], boosts: Mapping[str, float]) -> List[SearchResult]:
        """
        Multiply scores by category or entity boosts and re-sort

        Keys of boosts are matched against the result category and entity id.
        """
        boosted = []
        for result in results:
            boost = 1.0
            if result.category and result.category in boosts:
                boost *= boosts[result.category]
            if str(result.entity_id) in boosts:
                boost *= boosts[str(result.entity_id)]
            boosted.append(result.with_score(result.relevance_score * boost, applied_boost=boost))

        # sorted() is stable, ties keep their fused order
        return sorted(boosted, key=lambda r: r.relevance_score, reverse=True)
