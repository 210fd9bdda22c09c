"""Tests for the leaf similarity engine."""
import pytest

from bonsai.core.bonsai_types import Branch, Node
from bonsai.core.similarity import (
    build_tfidf,
    compute_leaf_similarities,
    cosine_sparse,
    tokenize_code,
)


def make_branch(*specs):
    """specs: (id, parent_id, code, is_leaf)"""
    return Branch(
        id="main",
        name="Main",
        nodes=[
            Node(id=i, prompt="p", code=code, parent_id=parent, is_leaf=leaf)
            for i, parent, code, leaf in specs
        ]
    )


class TestTokenizer:
    """Test code tokenization."""

    def test_lowercases_and_splits_on_non_word_runs(self):
        assert tokenize_code("def Foo(bar_1):\n    return bar_1+2") == [
            "def", "foo", "bar_1", "return", "bar_1", "2"
        ]

    def test_empty_text_has_no_tokens(self):
        assert tokenize_code("") == []
        assert tokenize_code("  ;;; ") == []


class TestTfidf:
    """Test TF-IDF vector construction."""

    def test_vectors_are_unit_length(self):
        vectors = build_tfidf(["a b b c", "a d"])
        for vector in vectors:
            assert sum(w * w for w in vector.values()) == pytest.approx(1.0)

    def test_empty_document_gives_zero_vector(self):
        vectors = build_tfidf(["", "x y"])
        assert vectors[0] == {}
        assert cosine_sparse(vectors[0], vectors[1]) == 0.0

    def test_identical_documents_have_cosine_one(self):
        a, b = build_tfidf(["return x + y", "return x + y"])
        assert cosine_sparse(a, b) == pytest.approx(1.0)


class TestLeafSimilarities:
    """Test similarity of a leaf against the other leaves."""

    def test_excludes_target_and_internal_nodes(self):
        branch = make_branch(
            (1, None, "root code", False),
            (2, 1, "alpha beta", True),
            (3, 1, "alpha gamma", True),
            (4, 1, "delta", False),
        )
        scores = compute_leaf_similarities(branch, branch.find(2))
        assert [s.id for s in scores] == [3]

    def test_sorted_descending_and_bounded(self):
        branch = make_branch(
            (1, None, "seed", False),
            (2, 1, "def add(a, b): return a + b", True),
            (3, 1, "def add(a, b): return a + b", True),
            (4, 1, "class Totally Different Thing", True),
            (5, 1, "def add(a, c): return a - c", True),
        )
        scores = compute_leaf_similarities(branch, branch.find(2))
        values = [s.similarity for s in scores]
        assert values == sorted(values, reverse=True)
        assert scores[0].id == 3
        assert scores[0].similarity == pytest.approx(1.0)
        assert all(0.0 <= v <= 1.0 for v in values)

    def test_ties_keep_branch_order(self):
        branch = make_branch(
            (1, None, "seed", False),
            (2, 1, "x", True),
            (3, 1, "unrelated", True),
            (4, 1, "other", True),
        )
        scores = compute_leaf_similarities(branch, branch.find(2))
        assert [s.id for s in scores] == [3, 4]
        assert all(s.similarity == 0.0 for s in scores)

    def test_single_leaf_has_no_scores(self):
        branch = make_branch((1, None, "seed", False), (2, 1, "x", True))
        assert compute_leaf_similarities(branch, branch.find(2)) == []

    def test_to_dict_shape(self):
        branch = make_branch((1, None, "s", False), (2, 1, "a", True), (3, 1, "a", True))
        score = compute_leaf_similarities(branch, branch.find(2))[0]
        assert set(score.to_dict()) == {"id", "similarity"}

    def test_symmetric(self):
        branch = make_branch(
            (1, None, "seed", False),
            (2, 1, "def area(r): return 3.14 * r * r", True),
            (3, 1, "def area(radius): return math.pi * radius ** 2", True),
        )
        forward = compute_leaf_similarities(branch, branch.find(2))[0].similarity
        backward = compute_leaf_similarities(branch, branch.find(3))[0].similarity
        assert forward == pytest.approx(backward)

    def test_empty_code_scores_zero(self):
        branch = make_branch(
            (1, None, "seed", False),
            (2, 1, "", True),
            (3, 1, "x = 1", True),
            (4, 1, "y = 2", True),
        )
        scores = compute_leaf_similarities(branch, branch.find(2))
        assert [s.similarity for s in scores] == [0.0, 0.0]
