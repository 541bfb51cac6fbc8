from spotmerge.core.text_similarity import levenshtein, name_similarity, normalize_label


def test_containment_scores_point_nine() -> None:
    assert name_similarity("Autoroute A6 Lyon", "Autoroute A6 Lyon Sud") == 0.9
    assert name_similarity("Autoroute A6 Lyon Sud", "Autoroute A6 Lyon") == 0.9


def test_exact_match_after_normalization() -> None:
    assert normalize_label("  Périphérique   Nord! ") == "peripherique nord"
    assert name_similarity("Périphérique Nord!", "peripherique  nord") == 1.0


def test_empty_labels_score_zero() -> None:
    assert name_similarity("", "Lyon") == 0.0
    assert name_similarity(None, None) == 0.0
    assert name_similarity("!!!", "Lyon") == 0.0


def test_edit_distance_ratio() -> None:
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert abs(name_similarity("Paris", "Pariz") - 0.8) < 1e-9


def test_similarity_is_symmetric() -> None:
    pairs = [("Gare de Lyon", "Lyon Part-Dieu"), ("A7 Valence", "A7 Vienne"), ("Köln", "Koeln")]
    for a, b in pairs:
        assert name_similarity(a, b) == name_similarity(b, a)
        assert 0.0 <= name_similarity(a, b) <= 1.0
