from civicpay.services.payments.payment_details import (
    CardDetails,
    NetbankingDetails,
    OtherDetails,
    UpiDetails,
    WalletDetails,
    extract_payment_details,
)


def test_upi_details():
    details = extract_payment_details(
        {"id": "pay_1234567890AB", "method": "upi", "vpa": "a@okaxis", "acquirer_data": {"rrn": "401234567890"}}
    )

    assert isinstance(details, UpiDetails)
    assert details.upi_id == "a@okaxis"
    assert details.utr == "401234567890"
    assert details.payment_id_short == "567890AB"


def test_card_details():
    details = extract_payment_details(
        {
            "id": "pay_X",
            "method": "card",
            "bank": "HDFC",
            "card": {"last4": "4242", "type": "debit", "network": "Visa"},
        }
    )

    assert isinstance(details, CardDetails)
    assert (details.card_last4, details.card_type, details.card_network) == ("4242", "debit", "Visa")
    assert details.bank_name == "HDFC"


def test_netbanking_and_wallet():
    assert extract_payment_details({"method": "netbanking", "bank": "SBIN"}) == NetbankingDetails(bank_name="SBIN")
    assert extract_payment_details({"method": "wallet", "wallet": "paytm"}) == WalletDetails(wallet_name="paytm")


def test_unknown_method_falls_back():
    details = extract_payment_details({"id": "pay_EMI", "method": "emi"})

    assert isinstance(details, OtherDetails)
    assert details.model_dump() == {"payment_id_short": "pay_EMI", "method": "emi"}


def test_missing_method():
    assert extract_payment_details({}).method is None
