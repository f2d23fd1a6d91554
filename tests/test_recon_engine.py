import pytest
from openpyxl import Workbook

from models import MatchMode, ReconConfig, Side
from recon_engine import LEFT_TABLE, RIGHT_TABLE, ReconEngine


@pytest.fixture
def engine():
    engine = ReconEngine()
    yield engine
    engine.close()


@pytest.fixture
def act_csv(tmp_path):
    path = tmp_path / "act.csv"
    path.write_text(
        "order_id,amount,description\n"
        "00123,100.50,first\n"
        "A2,200,\n"
        "A2,300,third\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def insurance_csv(tmp_path):
    path = tmp_path / "insurance.csv"
    path.write_text(
        "policy,premium\n"
        "00123,100.5\n"
        "A3,50\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def insurance_xlsx(tmp_path):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["policy", "premium", None])
    sheet.append([None, None, None])
    sheet.append(["00123", 100.5, None])
    sheet.append([777.0, 50, "note"])
    path = tmp_path / "insurance.xlsx"
    workbook.save(path)
    return path


class TestLoading:
    """CSV and workbook loading into DuckDB."""

    def test_load_csv_keeps_text(self, engine, act_csv):
        columns = engine.load_csv(str(act_csv), LEFT_TABLE)

        assert columns == ["order_id", "amount", "description"]
        assert engine.get_row_count(LEFT_TABLE) == 3

        records = engine.fetch_records(LEFT_TABLE, Side.LEFT)
        assert [r.id for r in records] == ["act_0", "act_1", "act_2"]
        assert records[0].get("order_id") == "00123"
        assert records[0].get("amount") == "100.50"
        assert records[1].get("description") is None

    def test_load_excel(self, engine, insurance_xlsx):
        columns = engine.load_excel(str(insurance_xlsx), RIGHT_TABLE)

        assert columns == ["policy", "premium", "column_3"]
        records = engine.fetch_records(RIGHT_TABLE, Side.RIGHT)
        assert [r.id for r in records] == ["ins_0", "ins_1"]
        assert records[0].cells == {"policy": "00123", "premium": "100.5", "column_3": None}
        assert records[1].get("policy") == "777"
        assert records[1].get("premium") == "50"

    def test_load_file_dispatches_on_suffix(self, engine, act_csv, insurance_xlsx):
        assert engine.load_file(str(act_csv), LEFT_TABLE)[0] == "order_id"
        assert engine.load_file(str(insurance_xlsx), RIGHT_TABLE)[0] == "policy"

    def test_unsupported_file_type(self, engine, tmp_path):
        path = tmp_path / "data.json"
        path.write_text("[]", encoding="utf-8")

        with pytest.raises(ValueError, match="Unsupported file type"):
            engine.load_file(str(path), LEFT_TABLE)

    def test_corrupt_workbook(self, engine, tmp_path):
        path = tmp_path / "broken.xlsx"
        path.write_bytes(b"not a zip archive")

        with pytest.raises(ValueError, match="Could not read workbook"):
            engine.load_file(str(path), LEFT_TABLE)

    def test_unknown_worksheet(self, engine, insurance_xlsx):
        with pytest.raises(ValueError, match="Worksheet 'Policies' not found"):
            engine.load_excel(str(insurance_xlsx), RIGHT_TABLE, sheet_name="Policies")

    def test_empty_workbook(self, engine, tmp_path):
        path = tmp_path / "empty.xlsx"
        Workbook().save(path)

        with pytest.raises(ValueError, match="No header row"):
            engine.load_excel(str(path), LEFT_TABLE)


class TestHelpers:

    def test_detect_column(self, engine, act_csv):
        engine.load_csv(str(act_csv), LEFT_TABLE)

        assert engine.detect_column(LEFT_TABLE, ["sum", "amount"]) == "amount"
        assert engine.detect_column(LEFT_TABLE, ["premium"]) is None

    def test_detect_column_cyrillic_header(self, engine, tmp_path):
        path = tmp_path / "insurance.csv"
        path.write_text("policy,Сумма премии\n1,10\n", encoding="utf-8")
        engine.load_csv(str(path), RIGHT_TABLE)

        assert engine.amount_column(RIGHT_TABLE) == "Сумма премии"

    def test_amount_column_prefers_given_name(self, engine, act_csv):
        engine.load_csv(str(act_csv), LEFT_TABLE)

        assert engine.amount_column(LEFT_TABLE, "description") == "description"

    def test_amount_column_not_detected(self, engine, insurance_csv):
        engine.load_csv(str(insurance_csv), RIGHT_TABLE)

        with pytest.raises(ValueError, match="none detected"):
            engine.amount_column(RIGHT_TABLE)

    def test_column_sum_normalizes(self, engine, act_csv):
        engine.load_csv(str(act_csv), LEFT_TABLE)

        assert engine.get_column_sum(LEFT_TABLE, "amount") == pytest.approx(600.5)


class TestReconcile:

    def test_requires_loaded_tables(self, engine):
        config = ReconConfig(
            key_col_left="order_id", key_col_right="policy",
            amount_col_left="amount", amount_col_right="premium",
        )
        with pytest.raises(ValueError, match="must be loaded"):
            engine.reconcile(config)

    def test_reconcile_files(self, engine, act_csv, insurance_csv):
        config = ReconConfig(
            key_col_left="order_id", key_col_right="policy",
            amount_col_left="amount", amount_col_right="premium",
        )

        result = engine.reconcile_files(str(act_csv), str(insurance_csv), config)

        assert [(p.left.id, p.right.id) for p in result.matched] == [("act_0", "ins_0")]
        assert [r.id for r in result.unmatched.left] == ["act_1", "act_2"]
        assert [r.id for r in result.unmatched.right] == ["ins_1"]
        assert [(g.side, g.key) for g in result.duplicates] == [(Side.LEFT, "A2")]
        assert result.summary.match_percentage == pytest.approx(25.0)

    def test_csv_against_workbook(self, engine, act_csv, insurance_xlsx):
        config = ReconConfig(
            key_col_left="order_id", key_col_right="policy",
            amount_col_left="amount", amount_col_right="premium",
        )

        result = engine.reconcile_files(str(act_csv), str(insurance_xlsx), config)

        assert len(result.matched) == 1

    def test_detected_amount_columns(self, engine, act_csv, tmp_path):
        insurance = tmp_path / "insurance_sum.csv"
        insurance.write_text("policy,Premium sum\n00123,100.5\n", encoding="utf-8")
        config = ReconConfig(key_col_left="order_id", key_col_right="policy")

        result = engine.reconcile_files(str(act_csv), str(insurance), config)

        assert result.config.amount_col_left == "amount"
        assert result.config.amount_col_right == "Premium sum"
        assert [(p.left.id, p.right.id) for p in result.matched] == [("act_0", "ins_0")]
        assert config.amount_col_left is None

    def test_proximity_mode(self, engine, act_csv, insurance_csv):
        config = ReconConfig(
            amount_col_left="amount", amount_col_right="premium",
            mode=MatchMode.PROXIMITY, amount_tolerance=60,
        )

        result = engine.reconcile_files(str(act_csv), str(insurance_csv), config)

        assert [(p.left.id, p.right.id) for p in result.matched] == [("act_0", "ins_0")]

    def test_check_arithmetic(self, engine, tmp_path):
        path = tmp_path / "sales.csv"
        path.write_text(
            "base,commission,net\n"
            "1000,120.00,880.00\n"
            "1000,100.00,880.00\n",
            encoding="utf-8",
        )
        engine.load_csv(str(path), LEFT_TABLE)

        issues = engine.check_arithmetic(LEFT_TABLE, "base", "commission", "net")

        assert [i.record.id for i in issues] == ["act_1"]
