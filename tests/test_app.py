import io
from pathlib import Path

import pytest
from openpyxl import Workbook, load_workbook

from finance_tracker import create_app
from finance_tracker.crypto import generate_key_text


HEADER = ["Fecha Operación", "Fecha Valor", "Concepto", "Importe", "Saldo"]


@pytest.fixture()
def app(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "DATABASE": str(tmp_path / "test.sqlite"),
        "APP_PASSWORD": "secret",
        "ENCRYPTION_KEY": generate_key_text(),
    })
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, password="secret"):
    return client.post("/login", data={"password": password}, follow_redirects=True)


def build_xlsx(rows):
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buff = io.BytesIO()
    workbook.save(buff)
    return buff.getvalue()


def upload_file(client, content, month="enero", year="2024", filename="extracto.xlsx"):
    return client.post(
        "/upload",
        data={"month": month, "year": year, "statement_file": (io.BytesIO(content), filename)},
        content_type="multipart/form-data",
        follow_redirects=True,
    )


def upload_json(client, data, month, year=2024):
    return client.post("/upload", json={"data": data, "month": month, "year": year})


def movement(amount, balance, concept="Movimiento"):
    return {
        "fechaOperacion": "01/01/2024",
        "fechaValor": "01/01/2024",
        "concepto": concept,
        "importe": amount,
        "saldo": balance,
    }


def test_pages_require_login(client):
    response = client.get("/")
    assert response.status_code == 302
    assert "/login" in response.headers["Location"]

    api_response = client.get("/uploads")
    assert api_response.status_code == 401
    assert api_response.get_json() == {"error": "Authentication required."}


def test_health_is_public(client):
    assert client.get("/health").get_json() == {"ok": True}


def test_login_rejects_incorrect_password(client):
    response = login(client, password="wrong")

    assert b"Incorrect password." in response.data
    assert client.get("/uploads").status_code == 401


def test_login_and_logout(client):
    response = login(client)
    assert b"Statements" in response.data
    assert client.get("/uploads").status_code == 200

    client.get("/logout")
    assert client.get("/uploads").status_code == 401


def test_login_without_configured_password(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("APP_PASSWORD", raising=False)
    monkeypatch.delenv("APP_PASSWORD_HASH", raising=False)
    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "nopass.sqlite"),
        "ENCRYPTION_KEY": generate_key_text(),
    })

    response = app.test_client().post("/login", data={"password": ""}, follow_redirects=True)

    assert b"Access password is not configured." in response.data


def test_login_redirects_to_requested_page(client):
    response = client.post("/login?next=/dashboard", data={"password": "secret"})

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/dashboard")


def test_upload_xlsx_statement(client):
    login(client)
    content = build_xlsx([
        ["Extracto"],
        HEADER,
        ["03/01/2024", "03/01/2024", "Recibo luz", "-60,00", "940,00"],
        ["02/01/2024", "02/01/2024", "Nómina", "1.000,00", "1.000,00"],
    ])

    response = upload_file(client, content)

    assert b"Statement saved (2 movements)." in response.data
    assert client.get("/uploads").get_json() == {"files": ["movimientos-2024-enero.json"]}
    movements = client.get("/uploads/movimientos-2024-enero.json").get_json()
    assert movements[0]["concept"] == "Recibo luz"
    assert movements[1]["amount"] == "1.000,00"


def test_upload_html_statement_saved_as_xls(client):
    login(client)
    html = (
        "<html><table><tr><td>Fecha operación</td><td>Fecha valor</td><td>Concepto</td>"
        "<td>Importe</td><td>Saldo</td></tr>"
        "<tr><td>05/02/2024</td><td>05/02/2024</td><td>Bizum recibido</td><td>25,00</td><td>125,00</td></tr>"
        "</table></html>"
    )

    response = upload_file(client, html.encode("latin-1"), month="febrero", filename="extracto.xls")

    assert b"Statement saved (1 movements)." in response.data
    movements = client.get("/uploads/movimientos-2024-febrero.json").get_json()
    assert movements == [{
        "operation_date": "05/02/2024",
        "value_date": "05/02/2024",
        "concept": "Bizum recibido",
        "amount": "25,00",
        "balance": "125,00",
    }]


def test_upload_without_statement_table_is_not_saved(client):
    login(client)

    response = upload_file(client, build_xlsx([["Nada"], ["que", "ver"]]))

    assert b"No movements found." in response.data
    assert client.get("/uploads").get_json() == {"files": []}


def test_upload_unreadable_file(client):
    login(client)

    response = upload_file(client, b"plain text, no table", filename="notes.txt")

    assert b"Could not read the statement file." in response.data


def test_upload_requires_month_before_saving(client):
    login(client)
    content = build_xlsx([HEADER, ["a", "b", "c", "1,00", "2,00"]])

    response = upload_file(client, content, month="  ")

    assert b"Month required." in response.data
    assert client.get("/uploads").get_json() == {"files": []}


def test_upload_requires_file(client):
    login(client)

    response = client.post("/upload", data={"month": "enero", "year": "2024"}, follow_redirects=True)

    assert b"Choose a statement file to upload." in response.data


def test_reupload_overwrites_period(client):
    login(client)
    upload_json(client, [movement("1,00", "1,00"), movement("2,00", "2,00")], "Enero")

    response = upload_json(client, [movement("3,00", "3,00", concept="Nuevo")], "enero")

    assert response.get_json() == {"fileName": "movimientos-2024-enero.json", "rows": 1}
    assert client.get("/uploads").get_json() == {"files": ["movimientos-2024-enero.json"]}
    movements = client.get("/uploads/movimientos-2024-enero.json").get_json()
    assert [m["concept"] for m in movements] == ["Nuevo"]


def test_json_upload_validation(client):
    login(client)

    invalid = client.post("/upload", json={"data": "nope", "month": "enero"})
    assert invalid.status_code == 400
    assert invalid.get_json() == {"error": "Invalid format."}

    blank_month = upload_json(client, [], "   ")
    assert blank_month.status_code == 400
    assert blank_month.get_json() == {"error": "Month required."}

    symbols = upload_json(client, [], "!!!")
    assert symbols.status_code == 400

    bad_year = upload_json(client, [], "enero", year="20x4")
    assert bad_year.status_code == 400

    assert client.get("/uploads").get_json() == {"files": []}


def test_uploads_are_listed_chronologically_and_filtered_by_year(client):
    login(client)
    for month, year in [("Marzo", 2024), ("Fecha de cierre", 2024), ("Enero", 2024), ("Diciembre", 2023)]:
        upload_json(client, [movement("1,00", "1,00")], month, year)

    files = client.get("/uploads").get_json()["files"]
    assert files == [
        "movimientos-2023-diciembre.json",
        "movimientos-2024-enero.json",
        "movimientos-2024-marzo.json",
        "movimientos-2024-fecha-de-cierre.json",
    ]
    assert client.get("/uploads?year=2023").get_json() == {"files": ["movimientos-2023-diciembre.json"]}

    index = client.get("/?year=2024")
    assert b"Fecha De Cierre" in index.data
    assert b"movimientos-2023-diciembre.json" not in index.data


def test_multi_word_month_labels_keep_calendar_order(client):
    login(client)
    for month in ["Febrero", "Enero 2024", "Diciembre"]:
        upload_json(client, [movement("1,00", "1,00")], month)

    files = client.get("/uploads?year=2024").get_json()["files"]

    assert files == [
        "movimientos-2024-enero-2024.json",
        "movimientos-2024-febrero.json",
        "movimientos-2024-diciembre.json",
    ]


def test_get_upload_errors(client):
    login(client)

    assert client.get("/uploads/secrets.txt").status_code == 400
    assert client.get("/uploads/movimientos-2024-enero.json").status_code == 404


def test_delete_upload(client):
    login(client)
    upload_json(client, [movement("1,00", "1,00")], "enero")

    response = client.delete("/uploads/movimientos-2024-enero.json")
    assert response.get_json() == {"deleted": True}
    assert client.delete("/uploads/movimientos-2024-enero.json").status_code == 404
    assert client.delete("/uploads/bad-name.json").status_code == 400


def test_delete_upload_form(client):
    login(client)
    upload_json(client, [movement("1,00", "1,00")], "enero")

    response = client.post("/uploads/movimientos-2024-enero.json/delete", follow_redirects=True)

    assert b"Statement deleted." in response.data
    assert client.get("/uploads").get_json() == {"files": []}


def test_statement_detail_shows_balance_summary(client):
    login(client)
    upload_json(client, [movement("100,00", "500,00", "Transferencia"), movement("-50,00", "400,00", "Compra")], "enero")

    response = client.get("/statements/movimientos-2024-enero.json")

    assert response.status_code == 200
    assert b"Transferencia" in response.data
    assert b"is-negative" in response.data
    assert "Inicial: 450,00".encode() in response.data
    assert "Final: 500,00".encode() in response.data
    assert client.get("/statements/movimientos-2024-marzo.json").status_code == 404


def test_statement_detail_without_reconcilable_balance(client):
    login(client)
    upload_json(client, [movement("100,00", "pendiente")], "enero")

    response = client.get("/statements/movimientos-2024-enero.json")

    assert response.status_code == 200
    assert b"Inicial:" not in response.data


def test_dashboard_data(client):
    login(client)
    upload_json(client, [movement("1.000,00", "1.000,00"), movement("-60,00", "0,00")], "enero")
    upload_json(client, [movement("-40,50", "959,50")], "febrero")

    data = client.get("/dashboard/data?year=2024").get_json()

    assert data["labels"] == ["Enero", "Febrero"]
    assert data["income"] == [1000.0, 0.0]
    assert data["expenses"] == [60.0, 40.5]
    assert data["net"] == [940.0, -40.5]
    assert data["totals"] == {"income": 1000.0, "expenses": 100.5, "net": 899.5}

    page = client.get("/dashboard?year=2024")
    assert "1.000,00".encode() in page.data


def test_export_summary_workbook(client):
    login(client)
    upload_json(client, [movement("100,00", "500,00"), movement("50,00", "400,00")], "enero")
    upload_json(client, [movement("-30,00", "470,00")], "marzo")
    upload_json(client, [movement("1,00", "???")], "febrero")

    response = client.get("/export-summary?year=2024")

    assert response.status_code == 200
    assert "saldos-finales.xlsx" in response.headers["Content-Disposition"]
    workbook = load_workbook(io.BytesIO(response.data))
    sheet = workbook["Saldos"]
    rows = [list(row) for row in sheet.iter_rows(values_only=True)]
    assert rows == [
        ["Mes", "Saldo Inicial", "Saldo Final", "Diferencia"],
        ["Enero", 350, 500, 150],
        ["Marzo", 500, 470, -30],
        ["Saldo anual", None, None, 120],
    ]
    assert sheet["D2"].font.color.rgb == "FF2E7D32"
    assert sheet["D3"].font.color.rgb == "FFC62828"
    assert sheet["A4"].font.bold is True


def test_db_health_requires_login(client):
    assert client.get("/health/db").status_code == 401
    login(client)

    health = client.get("/health/db").get_json()

    assert health["ok"] is True
