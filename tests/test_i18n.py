from api.middleware.locale import normalize_locale
from core.i18n import get_locale, set_locale, t


def test_translation_with_params_and_fallback():
    set_locale("vi")
    try:
        assert t("payments.refund.processed") == "Đã xử lý hoàn tiền"
        assert t("payments.not_found", payment="p-1") == "Không tìm thấy thanh toán: p-1"
        assert t("no.such.key") == "no.such.key"
    finally:
        set_locale("en")
    assert get_locale() == "en"
    assert t("payments.refund.processed") == "Refund processed"


def test_normalize_locale():
    assert normalize_locale("vi-VN") == "vi"
    assert normalize_locale("fr") == "en"
