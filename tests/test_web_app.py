import io

import pytest
from openpyxl import load_workbook

from web_app import app

ACT_CSV = b"order_id,amount\n00123,100.50\nA2,200\n"
INSURANCE_CSV = b"policy,premium\n00123,100.5\nA3,50\n"
SALES_CSV = b"base,commission,net\n1000,120,880\n1000,100,880\n"

KEY_FORM = {
    "key_col_left": "order_id",
    "key_col_right": "policy",
    "amount_col_left": "amount",
    "amount_col_right": "premium",
}


@pytest.fixture
def client(upload_dir):
    app.config["TESTING"] = True
    app.config["UPLOAD_FOLDER"] = str(upload_dir)
    with app.test_client() as client:
        yield client


def _upload(data: bytes, name: str):
    return (io.BytesIO(data), name)


def _post(client, url, form, **files):
    data = dict(form)
    data.update(files)
    return client.post(url, data=data, content_type="multipart/form-data")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


class TestReconcileEndpoint:

    def test_key_mode(self, client, upload_dir):
        response = _post(
            client, "/reconcile", KEY_FORM,
            left=_upload(ACT_CSV, "act.csv"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["mode"] == "key"
        assert body["summary"] == {
            "total_matched": 1,
            "total_unmatched": 2,
            "match_percentage": pytest.approx(100 / 3),
        }
        pair = body["matched"][0]
        assert pair["left"] == {"id": "act_0", "order_id": "00123", "amount": "100.50"}
        assert pair["right"]["id"] == "ins_0"
        assert [r["id"] for r in body["unmatched"]["left"]] == ["act_1"]
        assert body["totals"]["left"] == pytest.approx(300.5)
        assert body["review_cases"][0]["case"] == "high_unmatched_ratio"
        # request directories are removed afterwards
        assert list(upload_dir.iterdir()) == []

    def test_proximity_mode_without_keys(self, client):
        form = {"amount_col_left": "amount", "amount_col_right": "premium", "mode": "proximity"}

        response = _post(
            client, "/reconcile", form,
            left=_upload(ACT_CSV, "act.csv"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["mode"] == "proximity"
        assert body["matched"][0]["reason"] == "sum match"

    def test_missing_file(self, client):
        response = _post(client, "/reconcile", KEY_FORM, left=_upload(ACT_CSV, "act.csv"))

        assert response.status_code == 400
        assert "right" in response.get_json()["error"]

    def test_missing_key_columns(self, client):
        form = {"amount_col_left": "amount", "amount_col_right": "premium"}

        response = _post(
            client, "/reconcile", form,
            left=_upload(ACT_CSV, "act.csv"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 400
        assert "key_col_left" in response.get_json()["error"]

    def test_unknown_column(self, client):
        form = dict(KEY_FORM, amount_col_right="total")

        response = _post(
            client, "/reconcile", form,
            left=_upload(ACT_CSV, "act.csv"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 400
        assert "total" in response.get_json()["error"]

    def test_unsupported_upload(self, client):
        response = _post(
            client, "/reconcile", KEY_FORM,
            left=_upload(b"{}", "act.json"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 400
        assert "Unsupported file type" in response.get_json()["error"]

    def test_corrupt_workbook(self, client, upload_dir):
        response = _post(
            client, "/reconcile", KEY_FORM,
            left=_upload(b"not a zip archive", "act.xlsx"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 400
        assert "Could not read workbook" in response.get_json()["error"]
        assert list(upload_dir.iterdir()) == []

    def test_amount_columns_detected(self, client):
        form = {"key_col_left": "order_id", "key_col_right": "policy"}

        response = _post(
            client, "/reconcile", form,
            left=_upload(ACT_CSV, "act.csv"),
            right=_upload(b"policy,sum\n00123,100.5\n", "insurance.csv"),
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["summary"]["total_matched"] == 1
        assert body["totals"] == {"left": pytest.approx(300.5), "right": pytest.approx(100.5)}

    def test_unknown_mode(self, client):
        form = dict(KEY_FORM, mode="fuzzy")

        response = _post(
            client, "/reconcile", form,
            left=_upload(ACT_CSV, "act.csv"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 400


class TestExportEndpoint:

    def test_returns_workbook(self, client):
        response = _post(
            client, "/reconcile/export", KEY_FORM,
            left=_upload(ACT_CSV, "act.csv"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 200
        assert "reconcile-summary.xlsx" in response.headers["Content-Disposition"]
        workbook = load_workbook(io.BytesIO(response.data))
        assert workbook.sheetnames[0] == "Summary"
        assert workbook["Summary"]["B2"].value == 1

    def test_partial_arithmetic_columns(self, client):
        form = dict(KEY_FORM, base_col="amount")

        response = _post(
            client, "/reconcile/export", form,
            left=_upload(ACT_CSV, "act.csv"),
            right=_upload(INSURANCE_CSV, "insurance.csv"),
        )

        assert response.status_code == 400


class TestArithmeticEndpoint:
    FORM = {"base_col": "base", "commission_col": "commission", "net_col": "net"}

    def test_reports_issues(self, client):
        response = _post(client, "/arithmetic", self.FORM, file=_upload(SALES_CSV, "sales.csv"))

        assert response.status_code == 200
        body = response.get_json()
        assert body["rows_checked"] == 2
        assert len(body["issues"]) == 1
        issue = body["issues"][0]
        assert issue["row"]["id"] == "act_1"
        assert issue["check"] == "commission"

    def test_right_side_ids(self, client):
        form = dict(self.FORM, side="right")

        response = _post(client, "/arithmetic", form, file=_upload(SALES_CSV, "sales.csv"))

        assert response.get_json()["issues"][0]["row"]["id"] == "ins_1"

    def test_columns_required(self, client):
        response = _post(client, "/arithmetic", {}, file=_upload(SALES_CSV, "sales.csv"))

        assert response.status_code == 400
