from datetime import date
from decimal import Decimal

from django.test import SimpleTestCase

from apps.invoices.money import (
    amount_from_percentage,
    format_currency,
    ordinal,
    percentage_from_amount,
    round_percentage,
)
from apps.invoices.pdf import InvoiceDocument, InvoicePdfRenderer, measure, render_invoice_pdf, text_runs, wrap_text
from apps.invoices.presentation import (
    CONTINUATION_MARKER,
    build_schedule_rows,
    format_date,
    sort_schedules,
    split_paragraphs,
    strip_html,
    truncate_at_paragraph,
)
from apps.invoices.schedules import (
    Schedule,
    ScheduleEngine,
    ScheduleError,
    ScheduleStatus,
    SetAmount,
    SetDescription,
    SetPercentage,
    SetStatus,
    check_schedules,
    default_schedule,
)

TODAY = date(2025, 3, 5)


def schedule(schedule_id, percentage, amount, status=ScheduleStatus.UNPAID, description=None, due_date=None, auto=True):
    return Schedule(
        id=schedule_id,
        description=description or f"{ordinal(int(schedule_id[-1]))} payment",
        due_date=due_date,
        percentage=Decimal(str(percentage)),
        amount=Decimal(str(amount)),
        status=status,
        is_auto_description=auto,
    )


def engine(schedules, total, **kwargs):
    ids = iter(f"new-{n}" for n in range(1, 10))
    return ScheduleEngine(schedules, Decimal(str(total)), today=TODAY, id_factory=lambda: next(ids), **kwargs)


def total_percentage(schedules):
    return sum((s.percentage for s in schedules), Decimal("0"))


class MoneyTests(SimpleTestCase):
    def test_ordinals(self):
        expected = {1: "1st", 2: "2nd", 3: "3rd", 4: "4th", 11: "11th", 12: "12th", 13: "13th", 21: "21st", 100: "100th", 112: "112th"}
        for number, text in expected.items():
            self.assertEqual(ordinal(number), text)

    def test_percentage_amount_round_trip(self):
        for total in (Decimal("0.01"), Decimal("1"), Decimal("999.99"), Decimal("1234567.89")):
            for percentage in (Decimal("0"), Decimal("0.5"), Decimal("33.3333"), Decimal("41.67"), Decimal("100")):
                amount = amount_from_percentage(total, percentage)
                self.assertLess(abs(percentage_from_amount(total, amount) - percentage), Decimal("0.0001"))

    def test_percentage_of_zero_total_is_zero(self):
        self.assertEqual(percentage_from_amount(Decimal("0"), Decimal("50")), Decimal("0"))

    def test_round_percentage_half_up(self):
        self.assertEqual(round_percentage(Decimal("41.665")), Decimal("41.67"))
        self.assertEqual(round_percentage(Decimal("58.3333")), Decimal("58.33"))

    def test_format_currency(self):
        self.assertEqual(format_currency(Decimal("1234.56"), "USD"), "$1,234.56")
        self.assertEqual(format_currency(Decimal("1234.56"), "EUR"), "€1,234.56")
        self.assertEqual(format_currency(Decimal("-10"), "USD"), "-$10.00")
        self.assertEqual(format_currency(Decimal("1234.56"), "JPY"), "¥1,235")
        self.assertEqual(format_currency(Decimal("5"), "XYZ"), "XYZ 5.00")
        self.assertEqual(format_currency(None), "$0.00")


class ScheduleCheckTests(SimpleTestCase):
    def test_sum_within_tolerance_is_valid(self):
        check = check_schedules([schedule("s1", "33.3333", 0), schedule("s2", "33.3333", 0), schedule("s3", "33.3334", 0)])
        self.assertTrue(check.is_valid)
        self.assertEqual(check.warning, "")

    def test_warning_names_current_total(self):
        check = check_schedules([schedule("s1", 50, 500), schedule("s2", 40, 400)])
        self.assertFalse(check.is_valid)
        self.assertEqual(check.difference, Decimal("10"))
        self.assertEqual(check.warning, "Total payment percentage is 90.00%. It should be exactly 100%.")

    def test_empty_list_is_invalid(self):
        self.assertFalse(check_schedules([]).is_valid)

    def test_default_schedule_is_single_full_installment(self):
        default = default_schedule(Decimal("800"), due_date=TODAY, schedule_id="only")
        self.assertEqual(default.description, "1st payment")
        self.assertEqual(default.percentage, Decimal("100"))
        self.assertEqual(default.amount, Decimal("800"))
        self.assertEqual(default.due_date, TODAY)


class ReconcileTests(SimpleTestCase):
    def test_single_unpaid_schedule_absorbs_new_total(self):
        outcome = engine([schedule("s1", 100, 1000)], 1000).reconcile(Decimal("1500"))
        self.assertTrue(outcome.changed)
        self.assertEqual(outcome.schedules[0].amount, Decimal("1500"))
        self.assertEqual(outcome.schedules[0].percentage, Decimal("100"))
        self.assertEqual(outcome.notices, ())

    def test_paid_amount_kept_and_unpaid_redistributed(self):
        paid = schedule("s1", 50, 500, status=ScheduleStatus.PAID)
        unpaid = schedule("s2", 50, 500)
        outcome = engine([paid, unpaid], 1000).reconcile(Decimal("1200"))

        first, second = outcome.schedules
        self.assertEqual(first.amount, Decimal("500"))
        self.assertEqual(round_percentage(first.percentage), Decimal("41.67"))
        self.assertEqual(second.amount, Decimal("700"))
        self.assertEqual(round_percentage(second.percentage), Decimal("58.33"))
        self.assertEqual(
            outcome.notices,
            ("Payment schedules adjusted. 1 paid payment(s) unchanged, 1 unpaid payment(s) redistributed.",),
        )

    def test_paid_exceeding_new_total_is_rejected(self):
        schedules = (
            schedule("s1", 60, 600, status=ScheduleStatus.PAID),
            schedule("s2", 40, 400, status=ScheduleStatus.PAID),
        )
        subject = engine(schedules, 1000)
        with self.assertRaises(ScheduleError) as ctx:
            subject.reconcile(Decimal("800"))
        self.assertEqual(ctx.exception.code, "paid_exceeds_total")
        self.assertEqual(
            ctx.exception.detail,
            "Invoice total is less than already paid amounts. Please adjust manually.",
        )
        self.assertEqual(subject.schedules, schedules)

    def test_total_percentage_preserved_across_total_changes(self):
        schedules = (
            schedule("s1", 25, 250, status=ScheduleStatus.PAID),
            schedule("s2", 35, 350),
            schedule("s3", 40, 400, status=ScheduleStatus.WRITE_OFF),
        )
        for new_total in ("250", "999.99", "1000.01", "4321.50", "100000"):
            outcome = engine(schedules, 1000).reconcile(Decimal(new_total))
            self.assertLess(abs(total_percentage(outcome.schedules) - Decimal("100")), Decimal("0.01"), new_total)
            self.assertEqual(outcome.schedules[0].amount, Decimal("250"))

    def test_paid_amounts_never_change(self):
        schedules = (
            schedule("s1", 30, 300, status=ScheduleStatus.PAID),
            schedule("s2", 20, 200, status=ScheduleStatus.PAID),
            schedule("s3", 50, 500),
        )
        for new_total in ("500", "750", "2000"):
            outcome = engine(schedules, 1000).reconcile(Decimal(new_total))
            paid_amounts = [s.amount for s in outcome.schedules if s.is_paid]
            self.assertEqual(paid_amounts, [Decimal("300"), Decimal("200")])

    def test_zero_unpaid_percentages_split_equally(self):
        schedules = (
            schedule("s1", 40, 400, status=ScheduleStatus.PAID),
            schedule("s2", 0, 0),
            schedule("s3", 0, 0),
        )
        outcome = engine(schedules, 1000).reconcile(Decimal("1000"))
        self.assertEqual([s.amount for s in outcome.schedules[1:]], [Decimal("300"), Decimal("300")])
        self.assertEqual([s.percentage for s in outcome.schedules[1:]], [Decimal("30"), Decimal("30")])

    def test_unchanged_total_is_a_no_op(self):
        schedules = (schedule("s1", 50, 500), schedule("s2", 50, 500))
        outcome = engine(schedules, 1000).reconcile(Decimal("1000.001"))
        self.assertFalse(outcome.changed)
        self.assertEqual(outcome.schedules, schedules)

    def test_empty_schedule_list_is_a_no_op(self):
        outcome = engine((), 1000).reconcile(Decimal("2000"))
        self.assertFalse(outcome.changed)
        self.assertEqual(outcome.schedules, ())


class AddScheduleTests(SimpleTestCase):
    def test_add_by_amount_derives_percentage(self):
        outcome = engine([schedule("s1", 75, 750)], 1000).add(TODAY, amount=Decimal("250"))
        added = outcome.schedules[-1]
        self.assertEqual(added.id, "new-1")
        self.assertEqual(added.description, "2nd payment")
        self.assertEqual(added.percentage, Decimal("25"))
        self.assertEqual(added.amount, Decimal("250"))
        self.assertEqual(outcome.notices, ())

    def test_overflow_taken_from_latest_unpaid_schedule(self):
        schedules = (schedule("s1", 50, 500), schedule("s2", 40, 400))
        outcome = engine(schedules, 1000).add(TODAY, percentage=Decimal("20"))

        first, second, added = outcome.schedules
        self.assertEqual(first.percentage, Decimal("50"))
        self.assertEqual(second.percentage, Decimal("30"))
        self.assertEqual(second.amount, Decimal("300"))
        self.assertEqual(added.percentage, Decimal("20"))
        self.assertEqual(added.description, "3rd payment")
        self.assertEqual(total_percentage(outcome.schedules), Decimal("100"))
        self.assertEqual(outcome.notices, ("Adjusted 2nd payment by 10.00% ($100.00) to accommodate new payment",))

    def test_overflow_skips_paid_schedules(self):
        schedules = (schedule("s1", 60, 600), schedule("s2", 40, 400, status=ScheduleStatus.PAID))
        outcome = engine(schedules, 1000).add(TODAY, percentage=Decimal("10"))
        self.assertEqual(outcome.schedules[0].percentage, Decimal("50"))
        self.assertEqual(outcome.schedules[1].percentage, Decimal("40"))

    def test_overflow_rejected_when_everything_is_paid(self):
        schedules = (
            schedule("s1", 60, 600, status=ScheduleStatus.PAID),
            schedule("s2", 40, 400, status=ScheduleStatus.PAID),
        )
        subject = engine(schedules, 1000)
        with self.assertRaises(ScheduleError) as ctx:
            subject.add(TODAY, percentage=Decimal("10"))
        self.assertEqual(ctx.exception.code, "overflow_all_paid")
        self.assertEqual(
            ctx.exception.detail,
            "Cannot add payment: would exceed 100% and all existing payments are paid.",
        )
        self.assertEqual(subject.schedules, schedules)

    def test_add_requires_due_date_and_value(self):
        with self.assertRaises(ScheduleError) as ctx:
            engine((), 1000).add(None, percentage=Decimal("10"))
        self.assertEqual(ctx.exception.detail, "Please fill in all fields")
        with self.assertRaises(ScheduleError):
            engine((), 1000).add(TODAY)

    def test_add_rejects_out_of_range_values(self):
        with self.assertRaises(ScheduleError) as ctx:
            engine((), 1000).add(TODAY, amount=Decimal("0"))
        self.assertEqual(ctx.exception.code, "invalid_amount")
        with self.assertRaises(ScheduleError) as ctx:
            engine((), 1000).add(TODAY, percentage=Decimal("120"))
        self.assertEqual(ctx.exception.code, "invalid_percentage")

    def test_add_as_paid_stamps_payment_date(self):
        outcome = engine((), 1000).add(TODAY, percentage=Decimal("100"), status=ScheduleStatus.PAID)
        self.assertEqual(outcome.schedules[0].payment_date, TODAY)


class MutationTests(SimpleTestCase):
    def test_read_only_engine_rejects_every_mutation(self):
        subject = engine([schedule("s1", 100, 1000)], 1000, editable=False)
        operations = (
            lambda: subject.add(TODAY, percentage=Decimal("10")),
            lambda: subject.remove("s1"),
            lambda: subject.update("s1", SetDescription("Deposit")),
            lambda: subject.set_payment_date("s1", TODAY),
        )
        for operation in operations:
            with self.assertRaises(ScheduleError) as ctx:
                operation()
            self.assertEqual(ctx.exception.code, "read_only")
            self.assertEqual(ctx.exception.status_code, 403)

    def test_unknown_schedule_id(self):
        with self.assertRaises(ScheduleError) as ctx:
            engine([schedule("s1", 100, 1000)], 1000).remove("missing")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_remove_paid_schedule_is_rejected(self):
        with self.assertRaises(ScheduleError) as ctx:
            engine([schedule("s1", 100, 1000, status=ScheduleStatus.PAID)], 1000).remove("s1")
        self.assertEqual(ctx.exception.detail, "Cannot remove a paid payment schedule")

    def test_remove_relabels_only_auto_descriptions(self):
        schedules = (
            schedule("s1", 30, 300),
            schedule("s2", 30, 300, description="Wedding deposit", auto=False),
            schedule("s3", 40, 400),
        )
        outcome = engine(schedules, 1000).remove("s1")
        self.assertEqual([s.description for s in outcome.schedules], ["Wedding deposit", "2nd payment"])
        self.assertEqual(outcome.notices, ("Payment schedule removed",))

    def test_paid_amount_and_percentage_are_locked(self):
        subject = engine([schedule("s1", 100, 1000, status=ScheduleStatus.PAID)], 1000)
        for command in (SetAmount(Decimal("10")), SetPercentage(Decimal("10"))):
            with self.assertRaises(ScheduleError) as ctx:
                subject.update("s1", command)
            self.assertEqual(ctx.exception.code, "paid_locked")

    def test_set_amount_and_percentage_keep_fields_in_sync(self):
        subject = engine([schedule("s1", 100, 1000)], 1000)
        by_amount = subject.update("s1", SetAmount(Decimal("250"))).schedules[0]
        self.assertEqual(by_amount.percentage, Decimal("25"))
        by_percentage = subject.update("s1", SetPercentage(Decimal("12.5"))).schedules[0]
        self.assertEqual(by_percentage.amount, Decimal("125"))

    def test_set_negative_or_excessive_values_rejected(self):
        subject = engine([schedule("s1", 100, 1000)], 1000)
        with self.assertRaises(ScheduleError) as ctx:
            subject.update("s1", SetAmount(Decimal("-1")))
        self.assertEqual(ctx.exception.code, "invalid_value")
        with self.assertRaises(ScheduleError) as ctx:
            subject.update("s1", SetPercentage(Decimal("101")))
        self.assertEqual(ctx.exception.code, "invalid_percentage")

    def test_marking_paid_materializes_amount(self):
        subject = engine([schedule("s1", 25, 0), schedule("s2", 75, 750)], 1000)
        paid = subject.update("s1", SetStatus(ScheduleStatus.PAID)).schedules[0]
        self.assertEqual(paid.status, ScheduleStatus.PAID)
        self.assertEqual(paid.amount, Decimal("250"))
        self.assertEqual(paid.percentage, Decimal("25"))
        self.assertEqual(paid.payment_date, TODAY)

    def test_blank_description_restores_auto_label(self):
        subject = engine([schedule("s1", 100, 1000, description="Deposit", auto=False)], 1000)
        restored = subject.update("s1", SetDescription("  ")).schedules[0]
        self.assertEqual(restored.description, "1st payment")
        self.assertTrue(restored.is_auto_description)

    def test_payment_date_is_independent_of_status(self):
        updated = engine([schedule("s1", 100, 1000)], 1000).set_payment_date("s1", TODAY).schedules[0]
        self.assertEqual(updated.payment_date, TODAY)
        self.assertEqual(updated.status, ScheduleStatus.UNPAID)

    def test_unknown_command_type(self):
        with self.assertRaises(TypeError):
            engine([schedule("s1", 100, 1000)], 1000).update("s1", object())


class PresentationTests(SimpleTestCase):
    def test_sort_by_ordinal_then_due_date(self):
        schedules = [
            schedule("s1", 10, 100, description="Balance", due_date=date(2025, 1, 1)),
            schedule("s2", 10, 100, description="2nd payment", due_date=date(2025, 6, 1)),
            schedule("s3", 10, 100, description="1st payment", due_date=None),
            schedule("s4", 10, 100, description="Extras", due_date=None),
        ]
        self.assertEqual([s.id for s in sort_schedules(schedules)], ["s3", "s2", "s1", "s4"])

    def test_rows_are_display_strings(self):
        paid = Schedule(
            id="s1",
            description="1st payment",
            due_date=date(2025, 3, 5),
            percentage=Decimal("41.666667"),
            amount=Decimal("500"),
            status=ScheduleStatus.PAID,
            payment_date=date(2025, 3, 6),
        )
        unpaid = schedule("s2", "58.333333", 700)
        rows = build_schedule_rows([unpaid, paid], "USD")

        self.assertEqual(
            rows[0],
            {
                "id": "s1",
                "description": "1st payment",
                "due_date": "Mar 5, 2025",
                "percentage": "41.67%",
                "amount": "$500.00",
                "status": "PAID",
                "payment_date": "Mar 6, 2025",
            },
        )
        self.assertEqual(rows[1]["due_date"], "Not set")
        self.assertEqual(rows[1]["payment_date"], "-")
        self.assertEqual(rows[1]["status"], "UNPAID")

    def test_format_date(self):
        self.assertEqual(format_date(date(2025, 12, 25)), "Dec 25, 2025")
        self.assertEqual(format_date(None), "Not set")

    def test_strip_html_keeps_paragraphs_and_bullets(self):
        text = strip_html("<p>Hello &amp; welcome</p><ul><li>One</li><li>Two</li></ul>")
        self.assertEqual(text, "Hello & welcome\n\n• One\n• Two")
        self.assertEqual(strip_html(None), "")

    def test_truncate_at_paragraph_boundary(self):
        text = "x" * 80 + "\n\n" + "y" * 50
        content, truncated = truncate_at_paragraph(text, 100)
        self.assertTrue(truncated)
        self.assertEqual(content, "x" * 80 + CONTINUATION_MARKER)
        self.assertEqual(truncate_at_paragraph("short", 100), ("short", False))

    def test_split_paragraphs_detects_headings(self):
        paragraphs = split_paragraphs("TERMS AND CONDITIONS\n\nThe client agrees to pay. Fees apply.\n\n**Cancellation**")
        self.assertEqual(
            paragraphs,
            [
                ("TERMS AND CONDITIONS", True),
                ("The client agrees to pay. Fees apply.", False),
                ("Cancellation", True),
            ],
        )


class PdfLayoutTests(SimpleTestCase):
    def document(self, **overrides):
        values = {
            "number": "INV-001",
            "date": date(2025, 3, 5),
            "due_date": date(2025, 4, 5),
            "currency": "USD",
            "total": Decimal("1200.00"),
            "items": [
                {
                    "name": "Wedding coverage",
                    "description": "<p>Eight hours, two photographers</p>",
                    "quantity": Decimal("1.00"),
                    "rate": Decimal("1200.00"),
                    "amount": Decimal("1200.00"),
                }
            ],
            "schedule_rows": build_schedule_rows(
                [schedule("s1", 50, 600, status=ScheduleStatus.PAID), schedule("s2", 50, 600)], "USD"
            ),
            "company": {"name": "North Light Studio", "address": "12 Harbour Rd\nWellington", "payment_methods": "Bank transfer"},
            "client": {"name": "王小明", "address": "上海市 Nanjing Rd 100"},
            "notes": "<p>Thank you!</p>",
            "contract_terms": "<h2>TERMS</h2><p>Deposit is non-refundable.</p>",
            "generated_on": date(2025, 3, 5),
        }
        values.update(overrides)
        return InvoiceDocument(**values)

    def test_renders_pdf_bytes(self):
        content = render_invoice_pdf(self.document())
        self.assertTrue(content.startswith(b"%PDF-"))
        self.assertGreater(len(content), 1000)

    def test_long_contract_terms_flow_onto_more_pages(self):
        terms = "".join(f"<p>Clause {n}. The photographer will deliver edited images within sixty days.</p>" for n in range(200))
        renderer = InvoicePdfRenderer(self.document(contract_terms=terms))
        content = renderer.render()
        self.assertTrue(content.startswith(b"%PDF-"))
        self.assertGreater(renderer.page_count, 1)

    def test_acceptance_text(self):
        document = self.document(invoice_accepted=True)
        self.assertEqual(document.acceptance_text, "Invoice accepted | Contract terms not accepted")

    def test_text_runs_split_cjk(self):
        self.assertEqual(text_runs("Hello 世界!"), [("Hello ", False), ("世界", True), ("!", False)])
        self.assertEqual(text_runs("世界"), [("世界", True)])

    def test_wrap_text_respects_width(self):
        text = "The quick brown fox jumps over the lazy dog " * 6 + "中文内容需要按字符换行" * 4
        lines = wrap_text(text, 50, 10)
        self.assertGreater(len(lines), 1)
        for line in lines:
            self.assertLessEqual(measure(line, 10), 50)

    def test_wrap_text_breaks_overlong_words(self):
        lines = wrap_text("x" * 200, 30, 10)
        self.assertGreater(len(lines), 1)
        self.assertEqual("".join(lines), "x" * 200)
