from typing import Dict, Any

DEFAULT_LOCALE = "en"

TRANSLATIONS: Dict[str, Dict[str, Any]] = {
    "en": {
        "errors": {
            "invalid_request": "Invalid request data",
            "invalid_input": "Invalid contact information",
            "contact_required": "Either email or phone number is required",
            "contact_conflict": "Provide either email or phone number, not both",
            "invalid_email": "Invalid email format",
            "invalid_phone": "Phone number must be between 10 and 15 characters",
            "rate_limited": "Too many OTP requests. Please try again after an hour",
            "not_found": "OTP not found",
            "already_verified": "OTP already verified",
            "expired": "OTP has expired",
            "attempts_exceeded": "Maximum verification attempts exceeded",
            "code_mismatch": "Invalid OTP code. {remaining} attempts remaining",
            "randomness_unavailable": "Failed to generate OTP",
            "store_unavailable": "Storage is temporarily unavailable",
            "internal_error": "System error, please try again later"
        },
        "success": {
            "otp_sent": "OTP sent successfully",
            "otp_resent": "OTP resent successfully",
            "otp_verified": "OTP verified successfully"
        },
        "sms": {
            "otp_body": (
                "Your OTP verification code is: {code}\n\n"
                "This code will expire in {minutes} minutes.\n\n"
                "Do not share this code with anyone."
            )
        }
    },
    "zh-TW": {
        "errors": {
            "invalid_request": "請求資料無效",
            "invalid_input": "聯絡方式無效",
            "contact_required": "必須提供電子郵件或手機號碼",
            "contact_conflict": "電子郵件與手機號碼只能提供其中一項",
            "invalid_email": "電子郵件格式不正確",
            "invalid_phone": "手機號碼長度須為 10 至 15 個字元",
            "rate_limited": "請求過於頻繁，請一小時後再試",
            "not_found": "找不到驗證碼",
            "already_verified": "驗證碼已使用",
            "expired": "驗證碼已過期，請重新發送",
            "attempts_exceeded": "驗證碼嘗試次數過多，請重新獲取",
            "code_mismatch": "驗證碼錯誤，還剩 {remaining} 次嘗試機會",
            "randomness_unavailable": "驗證碼產生失敗",
            "store_unavailable": "儲存服務暫時無法使用",
            "internal_error": "系統錯誤，請稍後再試"
        },
        "success": {
            "otp_sent": "驗證碼已發送",
            "otp_resent": "驗證碼已重新發送",
            "otp_verified": "驗證成功"
        },
        "sms": {
            "otp_body": "您的驗證碼是：{code}，有效期 {minutes} 分鐘。請勿將驗證碼告知他人。"
        }
    }
}


def t(key: str, locale: str = DEFAULT_LOCALE, **kwargs) -> str:
    """
    Get translated text for the given key and locale.

    Args:
        key: Dot-notation key (e.g., "errors.expired")
        locale: Language code (en or zh-TW)
        **kwargs: Format parameters for string interpolation

    Returns:
        Translated text, or the key itself if not found
    """
    keys = key.split(".")
    value = TRANSLATIONS.get(locale, TRANSLATIONS[DEFAULT_LOCALE])

    for k in keys:
        if isinstance(value, dict):
            value = value.get(k, key)
        else:
            return key

    # Handle string interpolation
    if isinstance(value, str) and kwargs:
        try:
            return value.format(**kwargs)
        except KeyError:
            return value

    return value if isinstance(value, str) else key


def get_locale_from_header(accept_language: str | None) -> str:
    """
    Extract locale from Accept-Language header.

    Args:
        accept_language: Accept-Language header value

    Returns:
        Locale code (en or zh-TW), defaults to en
    """
    if not accept_language:
        return DEFAULT_LOCALE

    # Parse Accept-Language header (e.g., "zh-TW,en;q=0.9")
    languages = accept_language.split(",")
    for lang in languages:
        locale = lang.split(";")[0].strip()
        if locale in TRANSLATIONS:
            return locale

    return DEFAULT_LOCALE
