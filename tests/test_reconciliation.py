from budgetflow.services.documents import LineItem
from budgetflow.services.invoices import Invoice, InvoiceStatus
from budgetflow.services.purchase_orders import PurchaseOrder
from budgetflow.services.reconciliation import reconcile_po


def _po() -> PurchaseOrder:
    return PurchaseOrder(
        document_id="PO-1",
        number="0001",
        line_items=[
            LineItem(line_id="L1", description="Lens rental", sub_account_id="SA1", base_amount=600, total_amount=600),
            LineItem(line_id="L2", description="Dolly", sub_account_id="SA2", base_amount=400, total_amount=400),
        ],
    )


def _invoice(document_id: str, *lines: LineItem, status=InvoiceStatus.PENDING, po_id="PO-1") -> Invoice:
    return Invoice(document_id=document_id, po_id=po_id, status=status, line_items=list(lines))


def test_invoices_are_matched_per_po_line():
    po = _po()
    invoices = [
        _invoice("INV-1", LineItem(sub_account_id="SA1", base_amount=600, po_item_id="L1")),
        _invoice(
            "INV-2",
            LineItem(sub_account_id="SA2", base_amount=200, po_item_index=1),
            LineItem(sub_account_id="SA2", base_amount=50, is_new_item=True),
        ),
    ]

    result = reconcile_po(po, invoices)

    assert result.invoiced_amount == 850
    assert result.remaining_amount == 150
    assert result.percentage_used == 85.0
    assert result.unmatched_amount == 50
    assert result.invoice_ids == ["INV-1", "INV-2"]
    lines = {line.key: line for line in result.lines}
    assert lines["L1"].remaining_amount == 0
    assert lines["L2"].invoiced_amount == 200
    assert not result.over_invoiced


def test_only_live_invoices_of_this_po_count():
    po = _po()
    invoices = [
        _invoice("INV-1", LineItem(sub_account_id="SA1", base_amount=100), status=InvoiceStatus.CANCELLED),
        _invoice("INV-2", LineItem(sub_account_id="SA1", base_amount=100), status=InvoiceStatus.REJECTED),
        _invoice("INV-3", LineItem(sub_account_id="SA1", base_amount=100), status=InvoiceStatus.DRAFT),
        _invoice("INV-4", LineItem(sub_account_id="SA1", base_amount=100), po_id="PO-2"),
        _invoice("INV-5", LineItem(sub_account_id="SA1", base_amount=70), status=InvoiceStatus.PENDING_APPROVAL),
        _invoice("INV-6", LineItem(sub_account_id="SA1", base_amount=30), status=InvoiceStatus.PAID),
    ]

    result = reconcile_po(po, invoices)

    assert result.invoice_ids == ["INV-5", "INV-6"]
    assert result.invoiced_amount == 100


def test_over_invoicing_is_reported_with_negative_remaining():
    po = _po()
    result = reconcile_po(po, [_invoice("INV-1", LineItem(sub_account_id="SA1", base_amount=1200, po_item_id="L1"))])

    assert result.over_invoiced
    assert result.remaining_amount == -200
    assert result.percentage_used == 120.0
    data = result.to_dict()
    assert data["lines"][0]["over_invoiced"] is True
    assert data["lines"][0]["remaining_amount"] == -600
