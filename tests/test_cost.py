from hollon.backends.cost import CostCalculator


def test_estimate_uses_four_chars_per_token_and_half_output() -> None:
    estimate = CostCalculator().estimate("a" * 300, system_prompt="b" * 100)

    assert estimate.input_tokens == 100
    assert estimate.output_tokens == 50
    # 100 * 300 / 1e6 + 50 * 1500 / 1e6
    assert estimate.total_cost_cents == 0.105


def test_estimate_rounds_token_counts_up() -> None:
    estimate = CostCalculator().estimate("abcde")

    assert estimate.input_tokens == 2
    assert estimate.output_tokens == 1


def test_from_actual_rounds_to_six_decimals() -> None:
    calculator = CostCalculator(cost_per_input_token_cents=1.0, cost_per_output_token_cents=1.0)

    estimate = calculator.from_actual(1, 1)

    assert estimate.total_cost_cents == 0.000002
    assert estimate.to_dict() == {
        "input_tokens": 1,
        "output_tokens": 1,
        "total_cost_cents": 0.000002,
    }
