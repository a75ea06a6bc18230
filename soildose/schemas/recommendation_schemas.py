"""
Pydantic schemas for the recommendation API.
Covers products, formulas, datasets, runs and formula previews.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from enum import Enum


# ==================== ENUMS ====================

class LineStatusEnum(str, Enum):
    """Status of a recommendation line."""
    NORMAL = "normal"
    ZERO = "zero"
    ALREADY_SATISFIED = "already-satisfied"


class RoundModeEnum(str, Enum):
    """Rounding direction applied to in-band doses."""
    NEAREST = "nearest"
    UP = "up"
    DOWN = "down"


# ==================== PRODUCT SCHEMAS ====================

class DoseRulesSchema(BaseModel):
    allow_zero_dose: bool = Field(default=False, description="Keep zero doses instead of raising to the minimum")
    dose_min: float = Field(default=0, ge=0, description="Minimum dose in product units")
    dose_max: Optional[float] = Field(None, gt=0, description="Maximum dose; empty means unbounded")
    round_step: float = Field(default=0, ge=0, description="Rounding step; 0 disables rounding")
    round_mode: RoundModeEnum = RoundModeEnum.NEAREST


class ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category: str = Field(default="fertilizante", max_length=60)
    unit: str = Field(default="kg/ha", max_length=20)
    guarantees: Dict[str, float] = Field(default_factory=dict, description="Attribute -> guarantee %")
    dose_rules: DoseRulesSchema = Field(default_factory=DoseRulesSchema)


class ProductCreate(ProductBase):
    id: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    category: Optional[str] = None
    unit: Optional[str] = None
    guarantees: Optional[Dict[str, float]] = None
    dose_rules: Optional[DoseRulesSchema] = None


class ProductSchema(ProductBase):
    id: str

    class Config:
        from_attributes = True


# ==================== FORMULA SCHEMAS ====================

class FormulaBase(BaseModel):
    name: str = Field(default="(sem nome)", max_length=200)
    expression: str = Field(..., min_length=1, description="Formula text with @var@ and #column# placeholders")
    target_attribute: str = Field(..., min_length=1, max_length=40)
    product_ids: List[str] = Field(default_factory=list)
    depths: List[str] = Field(default_factory=list)
    priority: float = Field(default=100, description="Lower runs first")
    enabled: bool = True


class FormulaCreate(FormulaBase):
    id: Optional[str] = None


class FormulaUpdate(BaseModel):
    name: Optional[str] = None
    expression: Optional[str] = Field(None, min_length=1)
    target_attribute: Optional[str] = Field(None, min_length=1)
    product_ids: Optional[List[str]] = None
    depths: Optional[List[str]] = None
    priority: Optional[float] = None
    enabled: Optional[bool] = None


class FormulaSchema(FormulaBase):
    id: str

    class Config:
        from_attributes = True


class FormulaReorderRequest(BaseModel):
    ordered_ids: List[str]


# ==================== DATASET SCHEMAS ====================

class DatasetSchema(BaseModel):
    headers: List[str] = Field(default_factory=list)
    rows: List[List[Union[float, str, None]]] = Field(default_factory=list)


class DatasetImportRequest(BaseModel):
    csv_text: str = Field(..., min_length=1, description="CSV report content")
    delimiter: Optional[str] = Field(None, max_length=1)


class DatasetImportResponse(BaseModel):
    headers: List[str]
    row_count: int
    delimiter: str
    depths: List[str]


class VariableValue(BaseModel):
    value: float


# ==================== RUN SCHEMAS ====================

class RecommendationRunRequest(BaseModel):
    """Inline values override the stored dataset, formulas, products and variables."""
    dataset: Optional[DatasetSchema] = None
    formulas: Optional[List[Dict[str, Any]]] = None
    products: Optional[List[Dict[str, Any]]] = None
    variables: Optional[Dict[str, float]] = None
    include_zeros: bool = True
    decimals: Optional[int] = Field(None, ge=0, le=6, description="Rounding of aggregated totals")
    title: str = Field(default="Recomendação de Adubação", max_length=120)


class RecommendationLineSchema(BaseModel):
    point: str
    product: str
    product_id: str
    attribute: str
    guarantee_percent: float
    raw_need: float
    delivered_amount: float
    dose: float
    unit: str
    source_formula: str
    status: LineStatusEnum

    class Config:
        from_attributes = True


class AggregatedDoseSchema(BaseModel):
    point: str
    product: str
    total_dose: float
    unit: str


class ProductStatsSchema(BaseModel):
    product: str
    unit: str
    point_count: int
    min: float
    mean: float
    max: float


class RecommendationRunResponse(BaseModel):
    results: Dict[str, List[RecommendationLineSchema]]
    aggregated: List[AggregatedDoseSchema]
    stats: List[ProductStatsSchema]


# ==================== PREVIEW SCHEMAS ====================

class FormulaPreviewRequest(BaseModel):
    expression: str = Field(..., min_length=1)
    variables: Optional[Dict[str, float]] = None
    dataset: Optional[DatasetSchema] = None


class FormulaPreviewItem(BaseModel):
    point: str
    value: float


class FormulaPreviewResponse(BaseModel):
    items: List[FormulaPreviewItem]
