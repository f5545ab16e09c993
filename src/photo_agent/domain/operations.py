"""Edit operation models stored in an edit stack."""

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Rect = tuple[float, float, float, float]


class OperationKind(str, Enum):
    """Kinds of operations an edit stack can hold."""

    CROP = "crop"
    WHITE_BALANCE = "white_balance"
    EXPOSURE = "exposure"
    CONTRAST = "contrast"
    SATURATION = "saturation"
    VIBRANCE = "vibrance"


class _Operation(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str


class CropOp(_Operation):
    """Crop window in original-image coordinates plus optional rotation."""

    op: Literal["crop"] = "crop"
    rect_norm: Rect | None = None
    angle_deg: float | None = None
    aspect: str | None = None


class WhiteBalanceOp(_Operation):
    """White balance by gray point pick or by temperature/tint."""

    op: Literal["white_balance"] = "white_balance"
    method: Literal["gray_point", "temp_tint"]
    x: float | None = None
    y: float | None = None
    temp: float | None = None
    tint: float | None = None


class ExposureOp(_Operation):
    """Exposure change in EV stops."""

    op: Literal["exposure"] = "exposure"
    ev: float


class ContrastOp(_Operation):
    """Contrast change in percent."""

    op: Literal["contrast"] = "contrast"
    amt: float


class SaturationOp(_Operation):
    """Saturation change in percent."""

    op: Literal["saturation"] = "saturation"
    amt: float


class VibranceOp(_Operation):
    """Vibrance change in percent."""

    op: Literal["vibrance"] = "vibrance"
    amt: float


Operation = Annotated[
    CropOp | WhiteBalanceOp | ExposureOp | ContrastOp | SaturationOp | VibranceOp,
    Field(discriminator="op"),
]


class EditStackSnapshot(BaseModel):
    """Immutable view of an edit stack, as sent to the tool provider."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    version: Literal[1] = 1
    base_uri: str
    ops: tuple[Operation, ...] = ()

    def to_payload(self) -> dict[str, object]:
        """Serialize with camelCase keys and without unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Stored value domains, shared by the edit stack and the planner validator.
TEMP_RANGE = (-100.0, 100.0)
TINT_RANGE = (-100.0, 100.0)
EV_RANGE = (-3.0, 3.0)
AMOUNT_RANGE = (-100.0, 100.0)
UNIT_RANGE = (0.0, 1.0)
MIN_RECT_SIZE = 0.001


def clamp(value: float, bounds: tuple[float, float]) -> float:
    """Coerce a value into the closed interval given by bounds."""
    low, high = bounds
    return max(low, min(high, value))


def format_number(value: float) -> str:
    """Render integral floats without a trailing .0."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"
