from autobuy.parsers.offer_csv import parse_offer_csv
from autobuy.parsers.plan_request import (
    load_plan_request,
    parse_plan_request,
    parse_plan_request_json,
)

__all__ = [
    "load_plan_request",
    "parse_offer_csv",
    "parse_plan_request",
    "parse_plan_request_json",
]
