"""Rule-based personalization from Hexad player types and performance.

All functions are pure: they map a profile and scores to guidance sentences
that are spliced into prompts. Thresholds come from the environment once, at
construction of :class:`PersonalizationPolicy`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from env_validation import get_env_float
from schemas import HexadPlayerType, PlayerTypeProfile

NEARLY_PERFECT = "nearly perfect performance"
SOLID_UNDERSTANDING = "solid understanding demonstrated"
SIGNIFICANT_GAPS = "significant gaps in understanding"

ACHIEVER_PERFECT = "Congratulate them on this perfect test and suggest the next challenge to tackle."
ACHIEVER_REPEAT = "Suggest the test to be repeated to achieve perfection."
SOCIAL_HIGH = (
    "Congratulate them on their great performance and suggest helping classmates "
    "who might struggle with the material."
)
SOCIAL_REVIEW = "Suggest reviewing the material together with classmates to improve understanding."
PLAYER_PERFECT = "Congratulate them on this perfect test and suggest the next challenge to unlock more rewards."
PLAYER_REPEAT = "Suggest the test to be repeated to unlock full rewards."

SKILL_LOW = "Use encouraging and simple language. Focus on building confidence."
SKILL_MEDIUM = "Use balanced feedback that reinforces understanding and suggests next steps."
SKILL_HIGH = "Use advanced terminology. Challenge them with deeper insights and connections."

# Hint wording for lecture answers, indexed low/medium/high.
SKILL_HINT_STYLES = (
    "Provide a clear and simple hint that gently guides the user toward the next step "
    "without overwhelming them.",
    "Give the user a balanced hint that assists their reasoning while still allowing them "
    "to work out the solution independently. Assume general familiarity with the topic",
    "Offer a sophisticated and subtle hint that challenges the users understanding without "
    "giving away the solution. Use precise, domain-specific language and encourage deeper "
    "analysis or alternative approaches",
)

GAMIFICATION_PROMPTS = {
    HexadPlayerType.ACHIEVER: (
        "Give the user a small hint that helps them solve the problem without revealing the full "
        "solution. Keep the hint short and motivating. This is for an Achiever who values mastery and goals."
    ),
    HexadPlayerType.PHILANTHROPIST: (
        "Encourage the user to collaborate and share knowledge. If relevant, suggest looking for similar "
        "questions in the forum or encouraging them to help others. This is for a Philanthropist or "
        "Socialiser who values social interaction."
    ),
    HexadPlayerType.FREE_SPIRIT: (
        "Give the user a normal hint that helps them understand the problem and explore solutions "
        "independently. Encourage exploration and creativity. This is for a Free Spirit who values autonomy."
    ),
    HexadPlayerType.PLAYER: (
        "Be especially careful not to reveal any solution directly. Frame the hint as a challenge. "
        "This is for a Player or Disruptor who values competition."
    ),
}
GAMIFICATION_PROMPTS[HexadPlayerType.SOCIALISER] = GAMIFICATION_PROMPTS[HexadPlayerType.PHILANTHROPIST]
GAMIFICATION_PROMPTS[HexadPlayerType.DISRUPTOR] = GAMIFICATION_PROMPTS[HexadPlayerType.PLAYER]

# Order decides ties between equal scores: the first listed type wins.
DELEGATE_TYPES = (
    HexadPlayerType.ACHIEVER,
    HexadPlayerType.SOCIALISER,
    HexadPlayerType.PHILANTHROPIST,
    HexadPlayerType.PLAYER,
)


@dataclass(frozen=True)
class PersonalizationPolicy:
    correctness_high: float = 0.8
    correctness_max: float = 0.99
    skill_low: float = 0.3
    skill_high: float = 0.7

    @classmethod
    def from_env(cls) -> "PersonalizationPolicy":
        return cls(
            correctness_high=get_env_float("CORRECTNESS_LEVEL_HIGH", 0.8),
            correctness_max=get_env_float("CORRECTNESS_LEVEL_MAX", 0.99),
            skill_low=get_env_float("SKILL_LEVEL_THRESHOLD_LOW", 0.3),
            skill_high=get_env_float("SKILL_LEVEL_THRESHOLD_HIGH", 0.7),
        )

    def performance_context(self, correctness: float, success: bool) -> str:
        if success and correctness >= self.correctness_max:
            return NEARLY_PERFECT
        if success and correctness >= self.correctness_high:
            return SOLID_UNDERSTANDING
        return SIGNIFICANT_GAPS

    def individualized_guidance(self, profile: Optional[PlayerTypeProfile], correctness: float) -> str:
        if profile is None:
            return ""
        player_type = profile.primary_type
        if player_type in (HexadPlayerType.DISRUPTOR, HexadPlayerType.FREE_SPIRIT):
            player_type = strongest_delegate(profile)
        return self._guidance_for(player_type, correctness)

    def _guidance_for(self, player_type: HexadPlayerType, correctness: float) -> str:
        if player_type is HexadPlayerType.ACHIEVER:
            return ACHIEVER_PERFECT if correctness >= self.correctness_max else ACHIEVER_REPEAT
        if player_type in (HexadPlayerType.PHILANTHROPIST, HexadPlayerType.SOCIALISER):
            return SOCIAL_HIGH if correctness >= self.correctness_high else SOCIAL_REVIEW
        if player_type is HexadPlayerType.PLAYER:
            return PLAYER_PERFECT if correctness >= self.correctness_max else PLAYER_REPEAT
        raise ValueError(f"{player_type.value} has no direct guidance rule")

    def skill_guidance(self, average_skill_level: float) -> str:
        return (SKILL_LOW, SKILL_MEDIUM, SKILL_HIGH)[self.skill_band(average_skill_level)]

    def skill_hint_style(self, average_skill_level: float) -> str:
        return SKILL_HINT_STYLES[self.skill_band(average_skill_level)]

    def skill_band(self, average_skill_level: float) -> int:
        """0 for low, 1 for medium, 2 for high skill."""
        if average_skill_level <= self.skill_low:
            return 0
        if average_skill_level < self.skill_high:
            return 1
        return 2


def strongest_delegate(profile: PlayerTypeProfile) -> HexadPlayerType:
    """Highest scoring of the four types that have guidance rules.

    Unknown scores count as 0.0. Ties go to the earliest type in
    :data:`DELEGATE_TYPES`.
    """
    best = DELEGATE_TYPES[0]
    best_score = profile.score(best) or 0.0
    for player_type in DELEGATE_TYPES[1:]:
        score = profile.score(player_type) or 0.0
        if score > best_score:
            best, best_score = player_type, score
    return best


def gamification_prompt(profile: Optional[PlayerTypeProfile]) -> str:
    if profile is None:
        return ""
    return GAMIFICATION_PROMPTS[profile.primary_type]
