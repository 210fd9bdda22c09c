"""TF-IDF cosine similarity between leaf nodes' code."""
import math
import re
from collections import Counter
from typing import Dict, List

from bonsai.core.bonsai_types import Branch, Node, SimilarityScore

_TOKEN_SPLIT = re.compile(r"[^A-Za-z0-9_]+")


def tokenize_code(text: str) -> List[str]:
    """Lower-case and split on any run of non-word characters."""
    return [token for token in _TOKEN_SPLIT.split((text or "").lower()) if token]


def build_tfidf(docs: List[str]) -> List[Dict[str, float]]:
    """
    Build L2-normalized TF-IDF vectors for a list of documents.

    Uses smoothed IDF: ln((N + 1) / (df + 1)) + 1.

    Args:
        docs: Document texts

    Returns:
        One sparse vector (term -> weight) per document, in input order
    """
    tokens_per_doc = [tokenize_code(doc) for doc in docs]

    df: Counter = Counter()
    for tokens in tokens_per_doc:
        df.update(set(tokens))

    n_docs = len(docs)
    idf = {term: math.log((n_docs + 1) / (count + 1)) + 1 for term, count in df.items()}

    vectors = []
    for tokens in tokens_per_doc:
        vector = {}
        for term, freq in Counter(tokens).items():
            weight = freq * idf[term]
            if weight != 0:
                vector[term] = weight
        norm = math.sqrt(sum(w * w for w in vector.values())) or 1.0
        vectors.append({term: w / norm for term, w in vector.items()})
    return vectors


def cosine_sparse(a: Dict[str, float], b: Dict[str, float]) -> float:
    """Dot product of two already-normalized sparse vectors."""
    small, large = (a, b) if len(a) < len(b) else (b, a)
    return sum(weight * large.get(term, 0.0) for term, weight in small.items())


def compute_leaf_similarities(branch: Branch, target: Node) -> List[SimilarityScore]:
    """
    Compare a target node against every other leaf of a branch.

    The target is not checked for being a leaf; callers skip non-leaves.

    Args:
        branch: Branch whose leaves are compared
        target: Node to compare against (excluded from the output)

    Returns:
        Scores sorted by similarity descending; ties keep branch order
    """
    others = [
        node for node in branch.nodes
        if node.is_leaf and isinstance(node.code, str) and node.id != target.id
    ]
    vectors = build_tfidf([target.code or ""] + [node.code for node in others])
    target_vector = vectors[0]

    results = [
        SimilarityScore(id=node.id, similarity=min(1.0, cosine_sparse(target_vector, vector)))
        for node, vector in zip(others, vectors[1:])
    ]
    # sorted() is stable
    return sorted(results, key=lambda score: score.similarity, reverse=True)
