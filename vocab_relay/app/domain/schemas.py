"""Request/response models and the fixed upstream response schema."""
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

# Schema handed to the upstream as generationConfig.responseSchema.
VOCABULARY_RESPONSE_SCHEMA: dict = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "word": {"type": "STRING"},
            "part_of_speech": {"type": "STRING"},
            "definition": {"type": "STRING"},
            "example_sentence": {"type": "STRING"},
            "synonyms": {"type": "ARRAY", "items": {"type": "STRING"}},
        },
        "required": ["word", "part_of_speech", "definition", "example_sentence"],
    },
}


class VocabularyRequest(BaseModel):
    words: list[str] = Field(min_length=1)
    level: str | None = None
    language: str | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"words": ["serendipity", "ephemeral"], "level": "B2", "language": "en"}
            ]
        }
    }

    @field_validator("words")
    @classmethod
    def strip_words(cls, v: list[str]) -> list[str]:
        cleaned = [word.strip() for word in v]
        if any(not word for word in cleaned):
            raise ValueError("words must not contain blank entries")
        return cleaned


class WordDefinition(BaseModel):
    word: str
    part_of_speech: str
    definition: str
    example_sentence: str
    synonyms: list[str] = Field(default_factory=list)


class VocabularyResponse(BaseModel):
    words: list[WordDefinition]


class ErrorResponse(BaseModel):
    code: str
    message: str
    request_id: str | None = None


def build_vocabulary_prompt(request: VocabularyRequest) -> str:
    lines = [
        "You are a vocabulary tutor. For each word below, return one entry with "
        "its part of speech, a concise learner-friendly definition, one natural "
        "example sentence and up to three synonyms.",
    ]
    if request.level:
        lines.append(f"Target learner level: {request.level}.")
    if request.language:
        lines.append(f"Write definitions and examples in: {request.language}.")
    lines.append("Words:")
    lines.extend(f"- {word}" for word in request.words)
    return "\n".join(lines)
