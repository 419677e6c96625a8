"""
Learning Insight Models with Pydantic Validation

Schema for the rich insight blob attached to a card. Generated output is
accepted only when the required leaf fields are present and non-empty:
etymology.origin, mnemonics.visual and learningTips.forBeginners.
"""

from typing import Any, Dict, List, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hanziflow.errors import ValidationError


class _InsightModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)


def _clean_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        v = [v]
    return [str(item).strip() for item in v if item is not None and str(item).strip()]


class Etymology(_InsightModel):
    origin: str = Field(..., min_length=1)
    evolution: List[str] = Field(default_factory=list)
    cultural_context: Optional[str] = Field(None, alias='culturalContext')

    @field_validator('evolution', mode='before')
    @classmethod
    def normalize_evolution(cls, v: Any) -> List[str]:
        return _clean_list(v)


class Mnemonics(_InsightModel):
    visual: str = Field(..., min_length=1)
    story: Optional[str] = None
    components: Optional[str] = None


class CommonErrors(_InsightModel):
    similar_characters: List[str] = Field(default_factory=list, alias='similarCharacters')
    wrong_contexts: List[str] = Field(default_factory=list, alias='wrongContexts')
    tone_confusions: List[str] = Field(default_factory=list, alias='toneConfusions')

    @field_validator('similar_characters', 'wrong_contexts', 'tone_confusions', mode='before')
    @classmethod
    def normalize_lists(cls, v: Any) -> List[str]:
        return _clean_list(v)


class Usage(_InsightModel):
    common_collocations: List[str] = Field(default_factory=list, alias='commonCollocations')
    register_level: Optional[str] = Field(None, alias='registerLevel')
    frequency: Optional[str] = None
    domains: List[str] = Field(default_factory=list)

    @field_validator('common_collocations', 'domains', mode='before')
    @classmethod
    def normalize_lists(cls, v: Any) -> List[str]:
        return _clean_list(v)

    @field_validator('frequency', mode='before')
    @classmethod
    def stringify_frequency(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class LearningTips(_InsightModel):
    for_beginners: List[str] = Field(..., min_length=1, alias='forBeginners')
    for_intermediate: List[str] = Field(default_factory=list, alias='forIntermediate')
    for_advanced: List[str] = Field(default_factory=list, alias='forAdvanced')

    @field_validator('for_beginners', 'for_intermediate', 'for_advanced', mode='before')
    @classmethod
    def normalize_lists(cls, v: Any) -> List[str]:
        return _clean_list(v)


class CardInsights(_InsightModel):
    etymology: Etymology
    mnemonics: Mnemonics
    common_errors: CommonErrors = Field(default_factory=CommonErrors, alias='commonErrors')
    usage: Usage = Field(default_factory=Usage)
    learning_tips: LearningTips = Field(..., alias='learningTips')


def validate_insights(raw: Any) -> Dict[str, Any]:
    """
    Validate generated insights and return them in their stored (camelCase) form

    Raises:
        ValidationError: if the structure is missing or any required leaf is empty
    """
    if not isinstance(raw, dict):
        raise ValidationError(f"Insights must be an object, got {type(raw).__name__}")
    try:
        insights = CardInsights.model_validate(raw)
    except pydantic.ValidationError as e:
        fields = ', '.join('.'.join(str(p) for p in err['loc']) for err in e.errors())
        raise ValidationError(f"Incomplete insights: {fields}") from e
    return insights.model_dump(by_alias=True)


def is_valid_insights(raw: Any) -> bool:
    try:
        validate_insights(raw)
    except ValidationError:
        return False
    return True
