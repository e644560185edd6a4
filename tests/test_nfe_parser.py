from datetime import date
from decimal import Decimal
from pathlib import Path

from efd.parsing.codes import Direction
from efd.parsing.nfe import load_invoice_dir, parse_invoice, parse_invoice_batch

NS = "http://www.portalfiscal.inf.br/nfe"
ISSUER = "12345678000195"


def key(number: int, model: str = "55") -> str:
    return f"352401{ISSUER}{model}001{number:09d}1000000010"


def nfe_xml(
    number=1,
    *,
    cstat="100",
    model="55",
    tp_nf="1",
    cst="00",
    ns=True,
    protocol_key=True,
    items=(("001", "GASOLINA COMUM", "5656", "100.0000", "600.00"),),
) -> str:
    k = key(number, model)
    dets = "".join(
        f"""<det nItem="{i}"><prod><cProd>{code}</cProd><xProd>{desc}</xProd>
        <CFOP>{cfop}</CFOP><uCom>L</uCom><qCom>{qty}</qCom><vProd>{value}</vProd></prod>
        <imposto><ICMS><ICMS{cst}><orig>0</orig><CST>{cst}</CST><vBC>{value}</vBC>
        <pICMS>18.00</pICMS><vICMS>108.00</vICMS></ICMS{cst}></ICMS>
        <PIS><PISAliq><CST>01</CST><vBC>{value}</vBC><pPIS>1.65</pPIS><vPIS>9.90</vPIS></PISAliq></PIS>
        </imposto></det>"""
        for i, (code, desc, cfop, qty, value) in enumerate(items, start=1)
    )
    total = sum(Decimal(i[4]) for i in items)
    xmlns = f' xmlns="{NS}"' if ns else ""
    prot = (
        f"<protNFe><infProt>{'<chNFe>' + k + '</chNFe>' if protocol_key else ''}"
        f"<cStat>{cstat}</cStat></infProt></protNFe>"
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<nfeProc{xmlns}><NFe><infNFe Id="NFe{k}" versao="4.00">
<ide><mod>{model}</mod><serie>1</serie><nNF>{number}</nNF>
<dhEmi>2024-01-15T10:30:00-03:00</dhEmi><tpNF>{tp_nf}</tpNF></ide>
<emit><CNPJ>{ISSUER}</CNPJ></emit><dest><CNPJ>98765432000110</CNPJ></dest>
{dets}
<total><ICMSTot><vBC>{total}</vBC><vICMS>108.00</vICMS><vProd>{total}</vProd>
<vPIS>9.90</vPIS><vCOFINS>45.60</vCOFINS><vNF>{total}</vNF></ICMSTot></total>
<transp><modFrete>9</modFrete></transp>
<pag><detPag><indPag>0</indPag><tPag>01</tPag><vPag>{total}</vPag></detPag></pag>
</infNFe></NFe>{prot}</nfeProc>"""


def test_parse_authorized_invoice():
    doc = parse_invoice(nfe_xml(42))

    assert doc is not None
    assert doc.access_key == key(42)
    assert doc.number == "42"
    assert doc.series == "1"
    assert doc.model == "55"
    assert doc.direction is Direction.OUTBOUND
    assert doc.issue_date == date(2024, 1, 15)
    assert doc.issuer_cnpj == ISSUER
    assert doc.recipient_cnpj == "98765432000110"
    assert doc.authorized and doc.status_code == "100"
    assert doc.total_value == Decimal("600.00")
    assert doc.cofins_value == Decimal("45.60")
    assert doc.payment_indicator == "0"
    assert doc.freight_mode == "9"

    (item,) = doc.items
    assert item.number == 1
    assert item.product_code == "001"
    assert item.cfop == "5656"
    assert item.quantity == Decimal("100.0000")
    assert item.value == Decimal("600.00")
    assert item.cst_icms == "000"
    assert item.icms.value == Decimal("108.00")
    assert item.pis.rate == Decimal("1.65")
    assert item.cofins.value == Decimal("0")


def test_late_authorization_is_accepted():
    assert parse_invoice(nfe_xml(cstat="150")) is not None


def test_unauthorized_invoice_is_ignored():
    assert parse_invoice(nfe_xml(cstat="101")) is None
    assert parse_invoice(nfe_xml(cstat="")) is None


def test_malformed_xml_is_ignored():
    assert parse_invoice("<nfeProc><NFe>") is None
    assert parse_invoice(b"not xml at all") is None


def test_non_invoice_xml_is_ignored():
    assert parse_invoice("<root><a>1</a></root>") is None


def test_key_falls_back_to_id_attribute():
    doc = parse_invoice(nfe_xml(7, protocol_key=False))
    assert doc.access_key == key(7)


def test_parses_without_namespace_and_with_bom():
    doc = parse_invoice(b"\xef\xbb\xbf" + nfe_xml(3, ns=False).encode("utf-8"))
    assert doc is not None
    assert doc.number == "3"


def test_inbound_and_simples_cst():
    doc = parse_invoice(nfe_xml(tp_nf="0", cst="102"))
    assert doc.direction is Direction.INBOUND
    assert doc.items[0].cst_icms == "102"


def test_batch_counts_ignored_documents():
    calls = []
    batch = parse_invoice_batch(
        [nfe_xml(1), nfe_xml(2, cstat="135"), "<broken", nfe_xml(3, model="65")],
        lambda done, total: calls.append((done, total)),
    )

    assert [d.number for d in batch.documents] == ["1", "3"]
    assert batch.ignored == 2
    assert batch.total == 4
    assert set(batch.by_key()) == {key(1), key(3, "65")}
    assert calls[-1] == (4, 4)
    assert batch.sources == ["<input 1>", "<input 2>", "<input 3>", "<input 4>"]


def test_batch_labels_every_source(tmp_path: Path):
    path = tmp_path / "a.xml"
    path.write_text(nfe_xml(1), encoding="utf-8")

    batch = parse_invoice_batch([nfe_xml(2).encode("utf-8"), path, "<broken"])

    assert batch.sources == ["<input 1>", str(path), "<input 3>"]
    assert len(batch.sources) == batch.total


def test_load_invoice_dir_reads_nested_files(tmp_path: Path):
    (tmp_path / "2024" / "01").mkdir(parents=True)
    (tmp_path / "a.xml").write_text(nfe_xml(1), encoding="utf-8")
    (tmp_path / "2024" / "01" / "b.xml").write_text(nfe_xml(2), encoding="utf-8")
    (tmp_path / "2024" / "c.xml").write_text(nfe_xml(3, cstat="110"), encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    batch = load_invoice_dir(tmp_path)

    assert sorted(d.number for d in batch.documents) == ["1", "2"]
    assert batch.ignored == 1
    assert len(batch.sources) == 3


def test_load_invoice_dir_empty(tmp_path: Path):
    batch = load_invoice_dir(tmp_path)
    assert batch.documents == [] and batch.ignored == 0


def test_external_entities_are_ignored(tmp_path: Path):
    secret = tmp_path / "secret.txt"
    secret.write_text("LEAK")
    body = nfe_xml(5).split("\n", 1)[1].replace("GASOLINA COMUM", "&ext;")
    xml = tmp_path / "evil.xml"
    xml.write_text(
        f"<!DOCTYPE nfeProc [<!ENTITY ext SYSTEM '{secret.as_uri()}'>]>\n{body}",
        encoding="utf-8",
    )

    doc = parse_invoice(xml)
    assert doc is not None
    assert "LEAK" not in doc.items[0].description
