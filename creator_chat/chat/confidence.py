"""Confidence grading for retrieved evidence."""

from .config import Confidence, RagConfig, RetrievalParams


def grade_confidence(
    similarities: list[float], params: RetrievalParams, config: RagConfig
) -> Confidence:
    """Grade retrieval results for one query.

    ``similarities`` are the scores of chunks that cleared the question
    type's ``min_threshold``. The decision table:

    * nothing cleared ``min_threshold``: ``not_covered``
    * best match below the global floor: ``low``
    * best match at or above both ``preferred_threshold`` and the global
      confident-answer threshold: ``high``
    * everything else: ``medium``

    The label depends only on the best similarity, so raising it never
    lowers the label.
    """
    if not similarities:
        return Confidence.NOT_COVERED

    best = max(similarities)
    if best < config.min_similarity_for_any_answer:
        return Confidence.LOW
    if (
        best >= params.preferred_threshold
        and best >= config.min_similarity_for_confident_answer
    ):
        return Confidence.HIGH
    return Confidence.MEDIUM
