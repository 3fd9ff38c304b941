import threading
import unittest
from datetime import timedelta
from decimal import Decimal

from erp_engine.application.invoice_workflow import display_status, is_overdue
from erp_engine.core import InvoiceCreated, InvoiceSent, PaymentRecorded
from erp_engine.domain.contracts import DeclaredTotals, InvoiceCreateInput
from erp_engine.domain.models import DocumentKind, InvoiceStatus, utc_now
from erp_engine.errors import ConcurrencyConflict, Forbidden, GuardFailed, OverpaymentError, ValidationError
from erp_engine.infrastructure.repositories.memory import InMemoryDocumentRepository, InMemoryDocumentStore
from tests.helpers.engine import BUYER, LINE_DISCOUNTED, LINE_TAXED, SUPPLIER_A, SUPPLIER_B, TENANT_ID, EngineHarness, race


class InvoiceCreateTest(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = EngineHarness()
        self.invoices = self.engine.invoices

    def test_manual_invoice_from_declared_totals(self) -> None:
        invoice = self.engine.draft_invoice(declared_totals=DeclaredTotals(subtotal="100", tax_amount="18"))
        self.assertEqual(invoice.invoice_number, "INV-000001")
        self.assertEqual(invoice.status, InvoiceStatus.DRAFT)
        self.assertEqual(invoice.subtotal, Decimal("100.00"))
        self.assertEqual(invoice.tax_amount, Decimal("18.00"))
        self.assertEqual(invoice.total_amount, Decimal("118.00"))
        self.assertEqual(invoice.balance_due, Decimal("118.00"))
        self.assertEqual(self.engine.events_of(InvoiceCreated)[0].status, "draft")

    def test_itemized_invoice_with_shipping_and_discount(self) -> None:
        invoice = self.engine.draft_invoice(
            declared_totals=None,
            lines=[LINE_TAXED, LINE_DISCOUNTED],
            shipping_charges="20",
            discount_amount="5",
        )
        self.assertEqual(invoice.total_amount, Decimal("1420.00"))
        self.assertEqual(len(invoice.lines), 2)

    def test_due_date_must_not_precede_invoice_date(self) -> None:
        today = utc_now().date()
        with self.assertRaises(ValidationError) as ctx:
            self.engine.draft_invoice(invoice_date=today, due_date=today - timedelta(days=1))
        self.assertEqual(ctx.exception.message_key, "due_date_before_invoice_date")

    def test_negative_total_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.engine.draft_invoice(subtotal="10", discount_amount="25")
        self.assertEqual(ctx.exception.message_key, "total_negative")

    def test_lines_or_totals_required(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.invoices.create_manual(SUPPLIER_A, InvoiceCreateInput(due_date=utc_now().date()))
        self.assertEqual(ctx.exception.message_key, "lines_required")

    def test_only_suppliers_author_manual_invoices(self) -> None:
        with self.assertRaises(Forbidden):
            self.engine.draft_invoice(actor=BUYER)

    def test_purchase_order_must_belong_to_supplier(self) -> None:
        purchase_order = self.engine.sent_purchase_order(supplier_ref="supplier-b")
        with self.assertRaises(Forbidden):
            self.engine.draft_invoice(po_ref=purchase_order.id)
        invoice = self.engine.draft_invoice(actor=SUPPLIER_B, po_ref=purchase_order.id)
        self.assertEqual(invoice.po_ref, purchase_order.id)

    def test_drafts_are_hidden_from_buyer_until_sent(self) -> None:
        invoice = self.engine.draft_invoice()
        self.assertEqual(self.invoices.list_visible(BUYER), [])
        self.assertEqual([item.id for item in self.invoices.list_visible(SUPPLIER_A)], [invoice.id])

        with self.assertRaises(Forbidden):
            self.invoices.send(SUPPLIER_B, invoice.id)
        sent = self.invoices.send(SUPPLIER_A, invoice.id)
        self.assertEqual(sent.status, InvoiceStatus.PENDING)
        self.assertEqual([item.id for item in self.invoices.list_visible(BUYER)], [invoice.id])
        self.assertEqual(self.engine.events_of(InvoiceSent)[0].total_amount, "100.00")
        self.assertEqual(self.invoices.list_visible(SUPPLIER_B), [])

    def test_cancel_draft_drops_lines(self) -> None:
        invoice = self.engine.draft_invoice(declared_totals=None, lines=[LINE_TAXED])
        cancelled = self.invoices.cancel(SUPPLIER_A, invoice.id)
        self.assertEqual(cancelled.status, InvoiceStatus.CANCELLED)
        self.assertEqual(cancelled.lines, [])


class InvoiceFromQuotationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = EngineHarness(payment_terms_days=15)
        self.invoices = self.engine.invoices

    def test_accepted_quotation_becomes_pending_invoice(self) -> None:
        accepted = self.engine.accepted_quotation()
        invoice = self.invoices.create_from_quotation(BUYER, accepted.id)

        self.assertEqual(invoice.status, InvoiceStatus.PENDING)
        self.assertEqual(invoice.quotation_ref, accepted.id)
        self.assertEqual(invoice.supplier_ref, "supplier-a")
        self.assertEqual(invoice.total_amount, Decimal("1405.00"))
        self.assertEqual(len(invoice.lines), 2)
        self.assertEqual(invoice.due_date, invoice.invoice_date + timedelta(days=15))

        eligibility = self.engine.repository.find_by_unique_key(DocumentKind.INVOICE_ELIGIBILITY, accepted.id)
        self.assertEqual(eligibility.invoice_ref, invoice.id)

    def test_declared_quotation_total_wins(self) -> None:
        quotation = self.engine.manual_quotation(total_amount="1399.99")
        self.engine.quotations.review(BUYER, quotation.id)
        self.engine.quotations.decide(BUYER, quotation.id, "accept")

        invoice = self.invoices.create_from_quotation(SUPPLIER_A, quotation.id)
        self.assertEqual(invoice.total_amount, Decimal("1399.99"))
        self.assertEqual(invoice.subtotal, Decimal("1399.99"))
        self.assertEqual(invoice.lines, [])

    def test_invoice_lines_always_add_up_to_total(self) -> None:
        quotation = self.engine.manual_quotation(lines=[LINE_TAXED], total_amount="1100")
        self.engine.quotations.review(BUYER, quotation.id)
        self.engine.quotations.decide(BUYER, quotation.id, "accept")

        invoice = self.invoices.create_from_quotation(BUYER, quotation.id)
        stored = self.invoices.get(BUYER, invoice.id)
        self.assertEqual(stored.total_amount, Decimal("1100.00"))
        self.assertEqual(stored.tax_amount, Decimal("0.00"))
        self.assertEqual(stored.lines, [])

    def test_matching_quotation_lines_are_carried(self) -> None:
        quotation = self.engine.manual_quotation(lines=[LINE_TAXED], total_amount="1180")
        self.engine.quotations.review(BUYER, quotation.id)
        self.engine.quotations.decide(BUYER, quotation.id, "accept")

        invoice = self.invoices.create_from_quotation(BUYER, quotation.id)
        line_sum = sum((line.amounts().line_total for line in invoice.lines), Decimal("0.00"))
        self.assertEqual(len(invoice.lines), 1)
        self.assertEqual(line_sum, invoice.total_amount)
        self.assertEqual(invoice.tax_amount, Decimal("180.00"))

    def test_second_invoice_is_refused(self) -> None:
        accepted = self.engine.accepted_quotation()
        first = self.invoices.create_from_quotation(BUYER, accepted.id)
        with self.assertRaises(GuardFailed) as ctx:
            self.invoices.create_from_quotation(SUPPLIER_A, accepted.id)
        self.assertEqual(ctx.exception.message_key, "invoice_already_generated")
        self.assertEqual(ctx.exception.payload["invoice_id"], first.id)
        self.assertEqual(len(self.engine.repository.query(DocumentKind.INVOICE)), 1)

    def test_unaccepted_quotation_is_refused(self) -> None:
        quotation = self.engine.manual_quotation()
        with self.assertRaises(GuardFailed) as ctx:
            self.invoices.create_from_quotation(BUYER, quotation.id)
        self.assertEqual(ctx.exception.message_key, "quotation_not_accepted")

    def test_other_supplier_cannot_invoice(self) -> None:
        accepted = self.engine.accepted_quotation()
        with self.assertRaises(Forbidden):
            self.invoices.create_from_quotation(SUPPLIER_B, accepted.id)

    def test_concurrent_generation_yields_one_invoice(self) -> None:
        accepted = self.engine.accepted_quotation()
        barrier = threading.Barrier(4)
        created = []
        refused = []

        def _generate():
            barrier.wait()
            try:
                created.append(self.invoices.create_from_quotation(BUYER, accepted.id))
            except (GuardFailed, ConcurrencyConflict) as exc:
                refused.append(exc)

        threads = [threading.Thread(target=_generate) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(created), 1)
        self.assertEqual(len(refused), 3)
        self.assertEqual(len(self.engine.repository.query(DocumentKind.INVOICE)), 1)


class InvoicePaymentTest(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = EngineHarness()
        self.invoices = self.engine.invoices

    def test_partial_payments_settle_invoice(self) -> None:
        invoice = self.engine.approved_invoice("100.00")
        partial = self.invoices.record_payment(BUYER, invoice.id, "40", method="bank_transfer", reference="UTR-1")
        self.assertEqual(partial.status, InvoiceStatus.APPROVED)
        self.assertEqual(partial.amount_paid, Decimal("40.00"))
        self.assertEqual(partial.balance_due, Decimal("60.00"))

        paid = self.invoices.record_payment(BUYER, invoice.id, "60")
        self.assertEqual(paid.status, InvoiceStatus.PAID)
        self.assertEqual(paid.balance_due, Decimal("0.00"))
        self.assertEqual([entry.amount for entry in paid.payments], [Decimal("40.00"), Decimal("60.00")])
        self.assertEqual(paid.payments[0].reference, "UTR-1")

        with self.assertRaises(OverpaymentError):
            self.invoices.record_payment(BUYER, invoice.id, "0.01")

        events = self.engine.events_of(PaymentRecorded)
        self.assertEqual([event.status for event in events], ["approved", "paid"])

    def test_zero_total_invoice_is_settled_on_approval(self) -> None:
        invoice = self.engine.approved_invoice("0")
        self.assertEqual(invoice.status, InvoiceStatus.PAID)
        self.assertEqual(invoice.amount_paid, invoice.total_amount)

        stored = self.invoices.get(BUYER, invoice.id)
        self.assertEqual(stored.status, InvoiceStatus.PAID)
        self.assertEqual(stored.balance_due, Decimal("0.00"))
        with self.assertRaises(OverpaymentError):
            self.invoices.record_payment(BUYER, invoice.id, "0.01")

        receipt = self.engine.receipts.generate(BUYER, invoice.id)
        self.assertEqual(receipt.amount, Decimal("0.00"))

    def test_approval_with_balance_stays_approved(self) -> None:
        invoice = self.engine.approved_invoice("0.01")
        self.assertEqual(invoice.status, InvoiceStatus.APPROVED)

    def test_racing_payments_never_double_credit(self) -> None:
        store = InMemoryDocumentStore()
        engine = EngineHarness(InMemoryDocumentRepository(tenant_id=TENANT_ID, store=store))
        invoice = engine.approved_invoice("100.00")
        workers = [EngineHarness(InMemoryDocumentRepository(tenant_id=TENANT_ID, store=store)) for _ in range(4)]

        paid, refused = race(
            workers,
            lambda worker: worker.invoices.record_payment(BUYER, invoice.id, "60"),
            (ConcurrencyConflict, OverpaymentError, GuardFailed),
        )

        stored = engine.invoices.get(BUYER, invoice.id)
        self.assertEqual(len(paid), 1)
        self.assertEqual(len(refused), len(workers) - 1)
        self.assertEqual(stored.amount_paid, Decimal("60.00"))
        self.assertEqual(len(stored.payments), 1)
        self.assertEqual(stored.status, InvoiceStatus.APPROVED)

    def test_overpayment_reports_balance(self) -> None:
        invoice = self.engine.approved_invoice("100.00")
        with self.assertRaises(OverpaymentError) as ctx:
            self.invoices.record_payment(BUYER, invoice.id, "100.01")
        self.assertEqual(ctx.exception.payload["balance_due"], "100.00")
        self.assertEqual(self.invoices.get(BUYER, invoice.id).amount_paid, Decimal("0.00"))

    def test_payment_needs_approval(self) -> None:
        invoice = self.engine.draft_invoice()
        self.invoices.send(SUPPLIER_A, invoice.id)
        with self.assertRaises(GuardFailed) as ctx:
            self.invoices.record_payment(BUYER, invoice.id, "10")
        self.assertEqual(ctx.exception.message_key, "invoice_not_payable")

    def test_non_positive_payment(self) -> None:
        invoice = self.engine.approved_invoice()
        for amount in ("0", "-5"):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError) as ctx:
                    self.invoices.record_payment(BUYER, invoice.id, amount)
                self.assertEqual(ctx.exception.message_key, "payment_amount_not_positive")

    def test_supplier_cannot_pay_or_approve(self) -> None:
        invoice = self.engine.draft_invoice()
        self.invoices.send(SUPPLIER_A, invoice.id)
        with self.assertRaises(Forbidden):
            self.invoices.approve(SUPPLIER_A, invoice.id)
        self.invoices.approve(BUYER, invoice.id)
        with self.assertRaises(Forbidden):
            self.invoices.record_payment(SUPPLIER_A, invoice.id, "10")

    def test_invoice_with_payments_cannot_be_cancelled(self) -> None:
        invoice = self.engine.approved_invoice("100.00")
        self.invoices.record_payment(BUYER, invoice.id, "10")
        with self.assertRaises(GuardFailed) as ctx:
            self.invoices.cancel(BUYER, invoice.id)
        self.assertEqual(ctx.exception.message_key, "invoice_has_payments")


class InvoiceOverdueTest(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = EngineHarness()
        self.invoices = self.engine.invoices
        self.today = utc_now().date()

    def _late_invoice(self):
        invoice = self.engine.draft_invoice(
            invoice_date=self.today - timedelta(days=40),
            due_date=self.today - timedelta(days=10),
        )
        return self.invoices.send(SUPPLIER_A, invoice.id)

    def test_pending_past_due_is_overdue(self) -> None:
        invoice = self._late_invoice()
        self.assertTrue(is_overdue(invoice))
        self.assertEqual(display_status(invoice), "overdue")
        self.assertEqual(invoice.status, InvoiceStatus.PENDING)

    def test_due_today_is_not_overdue(self) -> None:
        invoice = self.engine.draft_invoice(due_in_days=0)
        self.assertFalse(is_overdue(invoice))
        self.assertTrue(is_overdue(invoice, self.today + timedelta(days=1)))

    def test_draft_keeps_its_status_label(self) -> None:
        invoice = self.engine.draft_invoice(
            invoice_date=self.today - timedelta(days=40),
            due_date=self.today - timedelta(days=10),
        )
        self.assertTrue(is_overdue(invoice))
        self.assertEqual(display_status(invoice), "draft")

    def test_paid_invoice_is_never_overdue(self) -> None:
        invoice = self._late_invoice()
        self.invoices.approve(BUYER, invoice.id)
        paid = self.invoices.record_payment(BUYER, invoice.id, "100.00")
        self.assertFalse(is_overdue(paid, self.today + timedelta(days=365)))
        self.assertEqual(display_status(paid), "paid")

    def test_overdue_filter(self) -> None:
        late = self._late_invoice()
        current = self.engine.draft_invoice()
        self.invoices.send(SUPPLIER_A, current.id)

        overdue = self.invoices.list_visible(BUYER, overdue=True)
        self.assertEqual([invoice.id for invoice in overdue], [late.id])
        self.assertEqual(len(self.invoices.list_visible(BUYER)), 2)


if __name__ == "__main__":
    unittest.main()
