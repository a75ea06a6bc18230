"""
Recommendation Router.
Endpoints for running dose recommendations, previewing formulas, importing
soil-analysis reports and managing formulas, products and variables.
"""
from typing import Any, Dict, List, Optional, Tuple
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
import io
import logging

from soildose import config
from soildose.schemas.recommendation_schemas import (
    DatasetImportRequest,
    DatasetImportResponse,
    FormulaCreate,
    FormulaPreviewRequest,
    FormulaPreviewResponse,
    FormulaReorderRequest,
    FormulaSchema,
    FormulaUpdate,
    ProductCreate,
    ProductSchema,
    ProductUpdate,
    RecommendationRunRequest,
    RecommendationRunResponse,
    VariableValue,
)
from soildose.services.dataset_reader import detect_delimiter, parse_dataset_csv
from soildose.services.recommendation_aggregator import aggregate_by_product, compute_product_stats
from soildose.services.recommendation_engine import (
    InvalidDatasetError,
    detect_depths,
    lines_to_dicts,
    normalize_dataset,
    recommendation_engine,
)
from soildose.services.recommendation_excel_service import recommendation_excel_service
from soildose.services.recommendation_pdf_service import create_recommendation_pdf_report
from soildose.services.recommendation_rules import (
    MISSING_DATASET_MESSAGE,
    MISSING_FORMULAS_MESSAGE,
    MISSING_PRODUCTS_MESSAGE,
    PRODUCT_TEMPLATES,
)
from soildose.services.recommendation_store import RecommendationStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/recommendation", tags=["recommendation"])

_store: Optional[RecommendationStore] = None


def get_store() -> RecommendationStore:
    """Process-wide store; tests override this dependency."""
    global _store
    if _store is None:
        _store = RecommendationStore(config.STORE_PATH)
        if config.AUTO_SEED:
            _store.seed_if_empty()
    return _store


def _run_recommendation(
    request: RecommendationRunRequest,
    store: RecommendationStore
) -> Tuple[Dict[str, List[Any]], List[Dict[str, Any]], List[Dict[str, Any]]]:
    dataset = normalize_dataset(request.dataset) if request.dataset is not None else store.get_dataset()
    formulas = request.formulas if request.formulas is not None else store.list_formulas()
    products = request.products if request.products is not None else store.list_products()
    variables = request.variables if request.variables is not None else store.get_variables()

    if dataset is None or not dataset.headers or not dataset.rows:
        raise HTTPException(status_code=400, detail=MISSING_DATASET_MESSAGE)
    if not products:
        raise HTTPException(status_code=400, detail=MISSING_PRODUCTS_MESSAGE)
    if not formulas:
        raise HTTPException(status_code=400, detail=MISSING_FORMULAS_MESSAGE)

    try:
        results = recommendation_engine.run(
            dataset, formulas, products, variables, include_zeros=request.include_zeros
        )
    except InvalidDatasetError as e:
        raise HTTPException(status_code=400, detail=str(e))

    aggregated = aggregate_by_product(results, decimals=request.decimals)
    stats = compute_product_stats(aggregated)
    return results, aggregated, stats


# ============== Run / Preview ==============

@router.post("/run", response_model=RecommendationRunResponse)
def run_recommendation(
    request: RecommendationRunRequest,
    store: RecommendationStore = Depends(get_store)
):
    """Run the recommendation engine over the stored or inline inputs."""
    results, aggregated, stats = _run_recommendation(request, store)
    return {"results": lines_to_dicts(results), "aggregated": aggregated, "stats": stats}


@router.post("/evaluate", response_model=FormulaPreviewResponse)
def preview_formula(
    request: FormulaPreviewRequest,
    store: RecommendationStore = Depends(get_store)
):
    """Evaluate a formula for every dataset row without allocating products."""
    dataset = normalize_dataset(request.dataset) if request.dataset is not None else store.get_dataset()
    if dataset is None:
        raise HTTPException(status_code=400, detail=MISSING_DATASET_MESSAGE)
    variables = request.variables if request.variables is not None else store.get_variables()
    items = recommendation_engine.evaluate_formula_over_dataset(request.expression, variables, dataset)
    return {"items": items}


# ============== Dataset ==============

@router.post("/dataset", response_model=DatasetImportResponse)
def import_dataset(
    request: DatasetImportRequest,
    store: RecommendationStore = Depends(get_store)
):
    """Import a soil-analysis CSV report as the current dataset."""
    delimiter = request.delimiter or detect_delimiter(request.csv_text)
    try:
        dataset = parse_dataset_csv(request.csv_text, delimiter)
    except InvalidDatasetError as e:
        raise HTTPException(status_code=400, detail=str(e))
    store.set_dataset(dataset)
    return {
        "headers": dataset.headers,
        "row_count": len(dataset.rows),
        "delimiter": delimiter,
        "depths": detect_depths(dataset),
    }


@router.get("/dataset/depths", response_model=List[str])
def get_dataset_depths(store: RecommendationStore = Depends(get_store)):
    dataset = store.get_dataset()
    return detect_depths(dataset) if dataset else []


@router.delete("/dataset", status_code=status.HTTP_204_NO_CONTENT)
def clear_dataset(store: RecommendationStore = Depends(get_store)):
    store.clear_dataset()


# ============== Formulas ==============

@router.get("/formulas", response_model=List[FormulaSchema])
def list_formulas(store: RecommendationStore = Depends(get_store)):
    return store.list_formulas()


@router.post("/formulas", response_model=FormulaSchema, status_code=status.HTTP_201_CREATED)
def create_formula(formula: FormulaCreate, store: RecommendationStore = Depends(get_store)):
    return store.add_formula(formula.model_dump(mode="json"))


@router.post("/formulas/reorder", response_model=List[FormulaSchema])
def reorder_formulas(request: FormulaReorderRequest, store: RecommendationStore = Depends(get_store)):
    return store.reorder_formulas(request.ordered_ids)


@router.put("/formulas/{formula_id}", response_model=FormulaSchema)
def update_formula(formula_id: str, patch: FormulaUpdate, store: RecommendationStore = Depends(get_store)):
    try:
        return store.update_formula(formula_id, patch.model_dump(mode="json", exclude_unset=True))
    except KeyError:
        raise HTTPException(status_code=404, detail="Fórmula não encontrada")


@router.post("/formulas/{formula_id}/toggle", response_model=FormulaSchema)
def toggle_formula(formula_id: str, store: RecommendationStore = Depends(get_store)):
    try:
        return store.toggle_formula(formula_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Fórmula não encontrada")


@router.delete("/formulas/{formula_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_formula(formula_id: str, store: RecommendationStore = Depends(get_store)):
    try:
        store.remove_formula(formula_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Fórmula não encontrada")


# ============== Products ==============

@router.get("/products", response_model=List[ProductSchema])
def list_products(store: RecommendationStore = Depends(get_store)):
    return store.list_products()


@router.post("/products", response_model=ProductSchema, status_code=status.HTTP_201_CREATED)
def create_product(product: ProductCreate, store: RecommendationStore = Depends(get_store)):
    return store.add_product(product.model_dump(mode="json"))


@router.put("/products/{product_id}", response_model=ProductSchema)
def update_product(product_id: str, patch: ProductUpdate, store: RecommendationStore = Depends(get_store)):
    try:
        return store.update_product(product_id, patch.model_dump(mode="json", exclude_unset=True))
    except KeyError:
        raise HTTPException(status_code=404, detail="Produto não encontrado")


@router.delete("/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product(product_id: str, store: RecommendationStore = Depends(get_store)):
    try:
        store.remove_product(product_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Produto não encontrado")


@router.get("/product-templates", response_model=Dict[str, List[str]])
def get_product_templates():
    """Attribute keys offered for each product category."""
    return PRODUCT_TEMPLATES


# ============== Variables ==============

@router.get("/variables", response_model=Dict[str, float])
def get_variables(store: RecommendationStore = Depends(get_store)):
    return store.get_variables()


@router.put("/variables/{name}", response_model=Dict[str, float])
def set_variable(name: str, body: VariableValue, store: RecommendationStore = Depends(get_store)):
    try:
        return store.set_variable(name, body.value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/variables/{name}", status_code=status.HTTP_204_NO_CONTENT)
def delete_variable(name: str, store: RecommendationStore = Depends(get_store)):
    try:
        store.remove_variable(name)
    except KeyError:
        raise HTTPException(status_code=404, detail="Variável não encontrada")


@router.post("/seed", response_model=Dict[str, int])
def seed_defaults(store: RecommendationStore = Depends(get_store)):
    """Load the default catalog and formulas into empty collections."""
    return store.seed_if_empty()


# ============== Reports ==============

@router.post("/excel")
def export_recommendation_excel(
    request: RecommendationRunRequest,
    store: RecommendationStore = Depends(get_store)
):
    """Run the recommendation and return it as an Excel workbook."""
    results, aggregated, stats = _run_recommendation(request, store)
    buffer = recommendation_excel_service.generate_recommendation_excel(
        results, aggregated, stats, title=request.title
    )
    return StreamingResponse(
        buffer,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="recomendacao.xlsx"'}
    )


@router.post("/pdf")
def export_recommendation_pdf(
    request: RecommendationRunRequest,
    store: RecommendationStore = Depends(get_store)
):
    """Run the recommendation and return it as a PDF report."""
    results, aggregated, stats = _run_recommendation(request, store)
    pdf_bytes = create_recommendation_pdf_report(results, aggregated, stats, title=request.title)
    return StreamingResponse(
        io.BytesIO(pdf_bytes),
        media_type="application/pdf",
        headers={"Content-Disposition": 'attachment; filename="recomendacao.pdf"'}
    )
