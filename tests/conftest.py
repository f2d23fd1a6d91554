import pytest

from models import MatchMode, ReconConfig, Side, make_records


def left_rows(*rows):
    return make_records(rows, Side.LEFT)


def right_rows(*rows):
    return make_records(rows, Side.RIGHT)


@pytest.fixture
def key_config():
    return ReconConfig(
        key_col_left="order_id",
        key_col_right="policy",
        amount_col_left="amount",
        amount_col_right="sum",
    )


@pytest.fixture
def proximity_config():
    return ReconConfig(
        amount_col_left="amount",
        amount_col_right="sum",
        mode=MatchMode.PROXIMITY,
    )


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path
