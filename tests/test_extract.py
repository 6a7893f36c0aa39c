import pytest

from main import (
    DEFAULT_GRAM_TO_OUNCE,
    ExtractedRates,
    ExtractionError,
    build_rates_response,
    convert_units,
    extract_rates,
    flatten_payload,
    normalize_payload,
    resolve_gram_to_ounce,
)


def extract(payload, currency="usd"):
    return extract_rates(flatten_payload(payload), currency, payload)


# -- heuristic chain -----------------------------------------------------------

def test_metal_and_gram_keys_win():
    rates = extract({"gold_gram_in_usd": 100, "silver_gram_in_usd": 1.2, "gram": 5})
    assert rates.gold_per_gram == 100
    assert rates.silver_per_gram == 1.2


def test_metal_and_gram_match_is_case_insensitive_and_skips_unparseable():
    rates = extract({"Gold_Gram": "n/a", "GOLD_GRAM_PRICE": "95.5", "Silver_Gram": "1.1"})
    assert rates.gold_per_gram == 95.5
    assert rates.silver_per_gram == 1.1


def test_currency_scoped_keys_match_by_path_suffix():
    payload = {"rates": {"inr": {"gram_in_inr": 7000}}, "silver_gram_in_inr": 85}
    rates = extract(payload, "inr")
    assert rates.gold_per_gram == 7000
    assert rates.silver_per_gram == 85


def test_bare_gram_and_silver_keys():
    rates = extract({"gram": 95.0, "silver": "1.15"})
    assert rates.gold_per_gram == 95.0
    assert rates.silver_per_gram == 1.15


def test_ticker_keys_and_paths():
    assert extract({"XAU": 3000.0, "XAG": 35.0}).gold_per_gram == 3000.0
    rates = extract({"xau": {"price": 88.0}, "xag": {"price": 1.0}})
    assert rates.gold_per_gram == 88.0
    assert rates.silver_per_gram == 1.0


def test_largest_gram_values_assign_gold_then_silver():
    rates = extract({"a_gram": 1.05, "b_gram": "85", "timestamp": 1700000000})
    assert rates.gold_per_gram == 85
    assert rates.silver_per_gram == 1.05


def test_largest_gram_values_drop_usd_keys_for_other_currencies():
    rates = extract({"gram_usd": 100.0, "p_gram": 8000.0, "q_gram": 95.0}, "inr")
    assert rates.gold_per_gram == 8000.0
    assert rates.silver_per_gram == 95.0


def test_largest_gram_values_ignore_conversion_factor():
    rates = extract({"a_gram": 85, "gram_to_ounce": 0.0321507, "b_price": 1.05})
    assert rates.gold_per_gram == 85
    assert rates.silver_per_gram == 1.05
    assert rates.gram_to_ounce_factor == 0.0321507


def test_largest_numeric_values_skip_timestamps():
    rates = extract({"price_a": 2500.0, "price_b": 30.0, "gmt_updated": 9e12, "time": 8e12})
    assert rates.gold_per_gram == 2500.0
    assert rates.silver_per_gram == 30.0


def test_missing_silver_fails_without_defaults():
    with pytest.raises(ExtractionError) as info:
        extract({"price": 10, "status": "ok"})
    assert info.value.keys == ["price", "status"]
    assert info.value.to_dict()["error"] == "Unexpected response format from GoldPriceZ"


def test_nothing_numeric_fails():
    with pytest.raises(ExtractionError):
        extract({"status": "ok", "message": "no data"})


# -- gram-to-ounce factor --------------------------------------------------------

def test_factor_from_payload_entry():
    assert resolve_gram_to_ounce(flatten_payload({"gram_to_ounce": "0.03215"})) == 0.03215


def test_factor_defaults_to_troy_constant():
    assert resolve_gram_to_ounce(flatten_payload({"gram": 1})) == DEFAULT_GRAM_TO_OUNCE


def test_zero_factor_is_ignored():
    assert resolve_gram_to_ounce(flatten_payload({"gram_to_ounce": 0})) == DEFAULT_GRAM_TO_OUNCE


def test_factor_from_top_level_formula_field():
    assert resolve_gram_to_ounce([], {"gram_to_ounce_formula": "0.5"}) == 0.5


# -- per-ounce post-processing ---------------------------------------------------

def test_per_ounce_in_local_currency_overrides_heuristics():
    payload = {
        "silver_ounce_in_inr": 93000,
        "ounce_in_inr": 300000,
        "gram_in_inr": 9000,
        "silver_gram_in_inr": 50,
        "gram_to_ounce_formula": 0.0321507,
    }
    rates = extract(payload, "inr")
    assert rates.silver_per_gram == pytest.approx(93000 * 0.0321507)
    assert rates.silver_per_gram == pytest.approx(2990.0, abs=0.1)
    assert rates.gold_per_gram == pytest.approx(300000 * 0.0321507)


def test_per_ounce_does_not_override_for_usd():
    rates = extract({"gold_gram": 100, "silver_gram": 1.2, "ounce_in_usd": 9999})
    assert rates.gold_per_gram == 100


def test_gold_ounce_lookup_never_takes_silver_field():
    payload = {"gold_gram_in_inr": 9000, "silver_gram_in_inr": 110, "silver_ounce_price_inr": 3421}
    rates = extract(payload, "inr")
    assert rates.gold_per_gram == 9000
    assert rates.silver_per_gram == pytest.approx(3421 * DEFAULT_GRAM_TO_OUNCE)


# -- conversion and response -----------------------------------------------------

def test_convert_units_identities():
    result = convert_units(100, 0.0321507)
    assert result.per_gram == 100
    assert result.per_ounce == 100 / 0.0321507
    assert result.per_kg == 100000


def test_convert_units_rejects_zero_factor():
    with pytest.raises(ValueError):
        convert_units(100, 0)


def test_response_prefers_currency_scoped_updated_marker():
    rates = ExtractedRates(gold_per_gram=9000, silver_per_gram=110, gram_to_ounce_factor=DEFAULT_GRAM_TO_OUNCE)
    top_level = {"gmt_inr_updated": "19-10-2026 10:00 am", "gmt_ounce_price_usd_updated": "older"}
    response = build_rates_response("inr", rates, top_level)
    assert response.currency == "INR"
    assert response.meta.updated == "19-10-2026 10:00 am"
    assert response.meta.source == "GoldPriceZ.com"


def test_response_falls_back_to_usd_marker_then_null():
    rates = ExtractedRates(gold_per_gram=100, silver_per_gram=1, gram_to_ounce_factor=DEFAULT_GRAM_TO_OUNCE)
    assert build_rates_response("usd", rates, {"gmt_ounce_price_usd_updated": "t"}).meta.updated == "t"
    assert build_rates_response("usd", rates, {}).meta.updated is None


def test_response_serializes_camel_case():
    rates = ExtractedRates(gold_per_gram=100, silver_per_gram=1, gram_to_ounce_factor=DEFAULT_GRAM_TO_OUNCE)
    body = build_rates_response("usd", rates).model_dump(by_alias=True)
    assert set(body["gold"]) == {"perGram", "perOunce", "perKg"}


# -- end-to-end scenarios --------------------------------------------------------

def test_scenario_currency_suffixed_usd_keys():
    response = normalize_payload({"gold_gram_in_usd": 100, "silver_gram_in_usd": 1.2}, "usd")
    assert response.gold.per_gram == 100
    assert response.silver.per_gram == 1.2
    assert response.gold.per_kg == 100000


def test_scenario_array_fragments():
    response = normalize_payload([{"gold_gram": 90}, {"silver_gram": 1.1}], "usd")
    assert response.gold.per_gram == 90
    assert response.silver.per_gram == 1.1


def test_scenario_json_encoded_data_field():
    payload = {"data": '{"gold_gram_in_inr": "9100.5", "silver_gram_in_inr": "112.25"}'}
    response = normalize_payload(payload, "inr")
    assert response.gold.per_gram == 9100.5
    assert response.silver.per_gram == 112.25


def test_largest_numeric_values_drop_usd_keys_for_other_currencies():
    rates = extract({"price_usd": 9e9, "p": 8000, "q": 95}, "inr")
    assert rates.gold_per_gram == 8000
    assert rates.silver_per_gram == 95


def test_oversized_integer_price_is_ignored():
    rates = extract({"gold_gram": 10**400, "gold_gram_in_usd": 100, "silver_gram": 1.1})
    assert rates.gold_per_gram == 100
