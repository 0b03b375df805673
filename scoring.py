"""Response scoring and the red/orange/green traffic light."""
from dataclasses import dataclass

from errors import InvalidArgument

DEFAULT_WEIGHT = 5
MAX_ANSWER_SCORE = 10


@dataclass(frozen=True)
class Thresholds:
    red_max: int
    orange_max: int


SCORING_PROFILES = {
    'lifestyle': Thresholds(red_max=33, orange_max=80),
    'high-performance': Thresholds(red_max=75, orange_max=89),
    'moderate': Thresholds(red_max=60, orange_max=85),
    'custom': Thresholds(red_max=70, orange_max=85),
}


def thresholds_for(client):
    """Client-specific thresholds, falling back to the client's profile and then to 'lifestyle'."""
    custom = (client or {}).get('scoringThresholds')
    if custom and 'redMax' in custom and 'orangeMax' in custom:
        return Thresholds(red_max=int(custom['redMax']), orange_max=int(custom['orangeMax']))
    profile = (client or {}).get('scoringProfile', 'lifestyle')
    return SCORING_PROFILES.get(profile, SCORING_PROFILES['lifestyle'])


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def score_answers(answers):
    """Weighted percentage (0-100) of answer scores out of MAX_ANSWER_SCORE.

    Answers are dicts with ``score`` and optional ``weight``; zero-weight
    answers (free text, photos) do not count.
    """
    total = possible = 0
    for answer in answers or []:
        if not isinstance(answer, dict):
            raise InvalidArgument("each answer must be an object with a score")
        weight = answer.get('weight', DEFAULT_WEIGHT)
        if not _is_number(weight) or weight < 0:
            raise InvalidArgument("answer weight must be a non-negative number", answer=answer.get('questionId'))
        if not weight:
            continue
        score = answer.get('score')
        if not _is_number(score) or not 0 <= score <= MAX_ANSWER_SCORE:
            raise InvalidArgument(f"answer score must be between 0 and {MAX_ANSWER_SCORE}", answer=answer.get('questionId'))
        total += score * weight
        possible += MAX_ANSWER_SCORE * weight
    if not possible:
        return 0
    return round(total / possible * 100)


def traffic_light(score, thresholds):
    if score <= thresholds.red_max:
        return 'red'
    if score <= thresholds.orange_max:
        return 'orange'
    return 'green'
