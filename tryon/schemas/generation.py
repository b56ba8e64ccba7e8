from pydantic import AliasChoices, BaseModel, Field


class TryOnBody(BaseModel):
    """Each image is a data-URI, bare base64, or an http(s) URL."""

    person_image: str | None = Field(
        default=None,
        validation_alias=AliasChoices("personImage", "personBase64", "person_image"),
    )
    clothing_image: str | None = Field(
        default=None,
        validation_alias=AliasChoices("clothingImage", "clothesBase64", "clothing_image"),
    )


class ClothingBody(BaseModel):
    prompt: str | None = None


class GenerationResult(BaseModel):
    output: str = Field(..., description="Generated image as a data-URI")
    cached: bool = False


class GenerationErrorBody(BaseModel):
    error: str
