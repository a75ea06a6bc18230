#!/usr/bin/env python3
"""
Recommendation runner.
Reads a soil-analysis CSV, runs the engine with the default catalog and
formulas (or JSON files), and prints per-product doses and statistics.
"""
import sys
import os
import json
from typing import Any, Dict, List

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from soildose.services.dataset_reader import read_dataset_file
from soildose.services.recommendation_aggregator import aggregate_by_product, compute_product_stats
from soildose.services.recommendation_engine import recommendation_engine
from soildose.services.recommendation_excel_service import recommendation_excel_service
from soildose.services.recommendation_store import load_seed_defaults

SAMPLE_CSV = os.path.join(os.path.dirname(__file__), '..', 'soildose', 'data', 'sample_laudo.csv')


def _load_json_list(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def main(argv=None) -> int:
    import argparse
    parser = argparse.ArgumentParser(description="Recomendação de adubação por ponto")
    parser.add_argument("csv", nargs="?", default=SAMPLE_CSV, help="Laudo de solo (CSV)")
    parser.add_argument("--products", help="JSON com a lista de produtos")
    parser.add_argument("--formulas", help="JSON com a lista de fórmulas")
    parser.add_argument("--var", action="append", default=[], metavar="NOME=VALOR", help="Variável global")
    parser.add_argument("--no-zeros", action="store_true", help="Omitir linhas de dose zero")
    parser.add_argument("--decimals", type=int, default=0, help="Casas decimais das doses totais")
    parser.add_argument("--excel", help="Salvar relatório Excel neste caminho")
    args = parser.parse_args(argv)

    seed = load_seed_defaults()
    products = _load_json_list(args.products) if args.products else seed.get("products", [])
    formulas = _load_json_list(args.formulas) if args.formulas else seed.get("formulas", [])
    variables = {}
    for item in args.var:
        name, _, value = item.partition("=")
        variables[name.strip()] = value

    dataset = read_dataset_file(args.csv)
    results = recommendation_engine.run(dataset, formulas, products, variables, include_zeros=not args.no_zeros)
    aggregated = aggregate_by_product(results, decimals=args.decimals)
    stats = compute_product_stats(aggregated)

    print(f"{'Ponto':<10} {'Produto':<20} {'Dose':>10}  Unidade")
    for row in aggregated:
        print(f"{row['point']:<10} {row['product']:<20} {row['total_dose']:>10}  {row['unit']}")
    print("")
    print(f"{'Produto':<20} {'Pontos':>6} {'Mín':>10} {'Média':>10} {'Máx':>10}")
    for s in stats:
        print(f"{s['product']:<20} {s['point_count']:>6} {s['min']:>10.1f} {s['mean']:>10.1f} {s['max']:>10.1f}")

    if args.excel:
        buffer = recommendation_excel_service.generate_recommendation_excel(results, aggregated, stats)
        with open(args.excel, "wb") as f:
            f.write(buffer.getvalue())
        print(f"\nRelatório salvo em {args.excel}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
