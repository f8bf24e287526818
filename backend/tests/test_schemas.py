import pytest

from runstudio.schemas import CreditBalance, Generation


def make_generation(**fields):
    return Generation(id="g1", modelId="owner/model", **fields)


def test_credit_balance_reads_snake_case_and_serves_camel_case():
    balance = CreditBalance.model_validate({"total_credits": 12, "purchased_credits": 4, "plan": "pro"})
    assert balance.totalCredits == 12

    dumped = balance.model_dump(by_alias=True)
    assert dumped["totalCredits"] == 12
    assert dumped["purchasedCredits"] == 4
    assert "total_credits" not in dumped

    assert CreditBalance.model_validate(dumped).totalCredits == 12


@pytest.mark.parametrize(
    "raw,expected",
    [(True, True), (1, True), ("true", True), ("1", True), ("false", False), ("0", False), ("", False), (None, False)],
)
def test_favorite_flag_parsing(raw, expected):
    assert make_generation(isFavorite=raw).isFavorite is expected


@pytest.mark.parametrize(
    "ms,expected",
    [(None, None), (400, "<1s"), (12345, "12.3s"), (125000, "2m 5s")],
)
def test_execution_time_display(ms, expected):
    assert make_generation(executionTimeMs=ms).execution_time_display == expected


def test_output_urls_and_kind():
    generation = make_generation(outputUrl="https://cdn/x.png", outputUrls=["https://cdn/x.png", "https://cdn/y.png"])
    assert generation.all_output_urls() == ["https://cdn/x.png", "https://cdn/y.png"]
    assert generation.output_kind == "image"
    assert make_generation(outputUrl="https://cdn/clip.mp4").output_kind == "video"
    assert make_generation().output_kind == "unknown"


def test_display_helpers_are_serialized():
    dumped = make_generation(executionTimeMs=1500, outputUrl="https://cdn/a.wav").model_dump(by_alias=True)
    assert dumped["executionTimeDisplay"] == "1.5s"
    assert dumped["outputKind"] == "audio"
