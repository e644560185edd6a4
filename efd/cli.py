# File: efd/cli.py
import logging
from pathlib import Path

import click
import pandas as pd

from efd.audit.abc import abc_frame, abc_items_from_ledger, classify_abc
from efd.audit.compare import compare_by_day_cfop, divergence_details
from efd.audit.fuel import audit_ledger_fuel, describe_kind, summarize_inconsistencies
from efd.audit.gaps import find_sequence_gaps, gap_entries_from_ledger
from efd.audit.orphans import document_key, reconcile_ledger
from efd.audit.taxes import ledger_taxes
from efd.io.sped_writer import strip_item_records
from efd.models import as_plain
from efd.parsing.codes import Direction
from efd.parsing.nfe import InvoiceBatch, parse_invoice_batch
from efd.parsing.sped import LedgerParseError, parse_ledger_file
from efd.parsing.utils import to_date
from efd.utils import read_text_file


@click.group()
def main():
    """EFD – CLI para auditoria do SPED Fiscal (ICMS/IPI) contra XML de NF-e."""
    logging.basicConfig(level=logging.INFO)


def _load_ledger(path: str):
    try:
        return parse_ledger_file(path)
    except (LedgerParseError, OSError) as e:
        click.echo(f"[ERRO DE LEITURA] {Path(path).name}: {e}")
        raise SystemExit(1)


def _load_invoices(paths) -> InvoiceBatch:
    """Files or directories; directories are searched for ``*.xml``."""
    files: list[Path] = []
    for path_str in paths:
        path = Path(path_str)
        if path.is_dir():
            files.extend(sorted(path.rglob("*.xml")))
        else:
            files.append(path)
    return parse_invoice_batch(files)


def _echo_frame(df: pd.DataFrame, empty: str):
    if df.empty:
        click.echo(empty)
    else:
        click.echo(df.to_string(index=False))


@main.command()
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False))
@click.option("--strict", is_flag=True, help="Abort on the first malformed line.")
def parse(ledger, strict):
    """Lê o arquivo SPED e mostra um resumo."""
    try:
        data = parse_ledger_file(ledger, strict=strict)
    except LedgerParseError as e:
        click.echo(f"[ERRO DE LEITURA] {Path(ledger).name}: {e}")
        raise SystemExit(1)

    start, end = data.period
    if data.header:
        click.echo(f"{data.header.company_name} ({data.header.cnpj})")
    click.echo(f"Período: {start} a {end}")
    click.echo(
        f"Documentos: {len(data.documents)} "
        f"(entradas {len(data.inbound)}, saídas {len(data.outbound)})"
    )
    click.echo(f"Movimentações de combustível: {len(data.fuel_days)}")
    for w in data.warnings:
        click.echo(f"[AVISO] linha {w.line_no} [{w.tag}]: {w.message}")
    click.echo(f"[OK] {data.line_count} linhas lidas")


@main.command()
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False))
@click.option("--all-issuers", is_flag=True, help="Include third-party documents.")
def gaps(ledger, all_issuers):
    """Lacunas na numeração por modelo e série."""
    data = _load_ledger(ledger)
    found = find_sequence_gaps(gap_entries_from_ledger(data, own_only=not all_issuers))
    df = pd.DataFrame([as_plain(g) for g in found])
    _echo_frame(df, "[OK] nenhuma lacuna de numeração")


@main.command()
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False))
@click.argument("invoices", type=click.Path(exists=True), nargs=-1, required=True)
def orphans(ledger, invoices):
    """Notas sem escrituração e escriturações sem XML."""
    data = _load_ledger(ledger)
    batch = _load_invoices(invoices)
    result = reconcile_ledger(data, batch.documents)
    click.echo(f"XML ignorados (não autorizados/ilegíveis): {batch.ignored}")
    click.echo(f"[XML SEM SPED] {len(result.invoice_without_ledger)}")
    for doc in result.invoice_without_ledger:
        click.echo(f"  {document_key(doc)}")
    click.echo(f"[SPED SEM XML] {len(result.ledger_without_invoice)}")
    for doc in result.ledger_without_invoice:
        click.echo(f"  {document_key(doc)}")
    if result.ledger_without_key:
        click.echo(f"[SEM CHAVE] {len(result.ledger_without_key)}")
    if result.is_clean:
        click.echo("[OK] SPED e XML conferem")


@main.command()
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--direction",
    type=click.Choice(["in", "out", "all"]),
    default="out",
    show_default=True,
)
def abc(ledger, direction):
    """Curva ABC dos itens por valor."""
    data = _load_ledger(ledger)
    dirs = {"in": Direction.INBOUND, "out": Direction.OUTBOUND, "all": None}
    rows = classify_abc(abc_items_from_ledger(data, dirs[direction]))
    _echo_frame(abc_frame(rows), "[OK] nenhum item")


@main.command()
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False))
def taxes(ledger):
    """Débitos e créditos por tributo e CFOP."""
    report = ledger_taxes(_load_ledger(ledger))
    for tax, summary in report.taxes.items():
        click.echo(
            f"{tax.value.upper():7} débito {summary.total_debit:>14.2f}  "
            f"crédito {summary.total_credit:>14.2f}  saldo {summary.balance:>14.2f}"
        )
        for c in summary.top_cfops:
            click.echo(f"    {c.cfop}  {c.debit:>14.2f}  {c.credit:>14.2f}")
    if report.pis_cofins_missing:
        click.echo("[AVISO] nenhum valor de PIS/COFINS nos itens (C170)")


@main.command()
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--invoices",
    type=click.Path(exists=True),
    default=None,
    help="Pasta com XML; sem ela os documentos do próprio SPED são usados.",
)
def fuel(ledger, invoices):
    """Auditoria do LMC (registros 1300/1310/1320)."""
    data = _load_ledger(ledger)
    docs = _load_invoices([invoices]).documents if invoices else None
    found = audit_ledger_fuel(data, docs)
    summary = summarize_inconsistencies(found)
    for inc in found:
        click.echo(
            f"[{inc.severity.value}] {inc.movement_date} {inc.product_code} "
            f"{describe_kind(inc.kind)}: {inc.description}"
        )
    click.echo(
        f"Total: {summary['total']} "
        + " ".join(f"{k}={v}" for k, v in summary["by_severity"].items())
    )


@main.command()
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False))
@click.argument("invoices", type=click.Path(exists=True), nargs=-1, required=True)
@click.option("--day", default=None, help="Detail one day (YYYY-MM-DD) ...")
@click.option("--cfop", default=None, help="... and CFOP")
def compare(ledger, invoices, day, cfop):
    """Saídas por dia e CFOP: SPED (C190) x XML (vProd)."""
    data = _load_ledger(ledger)
    batch = _load_invoices(invoices)
    if day and cfop:
        notes = divergence_details(data, batch.documents, to_date(day), cfop)
        _echo_frame(pd.DataFrame([as_plain(n) for n in notes]), "[OK] sem documentos")
        return
    comparison = compare_by_day_cfop(data, batch.documents)
    _echo_frame(comparison.to_frame(), "[OK] nada a comparar")
    click.echo(
        f"Total SPED {comparison.total_ledger:.2f}  XML {comparison.total_invoice:.2f}"
    )


@main.command(name="strip-items")
@click.argument("ledger", type=click.Path(exists=True, dir_okay=False))
@click.argument("output", type=click.Path(dir_okay=False))
def strip_items(ledger, output):
    """Remove C170-C179 e recalcula os totalizadores."""
    result = strip_item_records(read_text_file(ledger))
    Path(output).write_bytes(result.text.encode("latin-1", errors="replace"))
    if result.total_removed:
        click.echo(
            f"[OK] {result.total_removed} linha(s) removida(s), "
            f"{result.removed_9900} registro(s) 9900 eliminado(s)"
        )
    else:
        click.echo("[OK] nenhum C170 encontrado, arquivo copiado sem alterações")


if __name__ == "__main__":
    main()
