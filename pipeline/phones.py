"""电话号码归一化"""
import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """把电话号码归一化为 10 位美国号码。

    去掉非数字字符和开头的国家码 1；区号以 0 或 1 开头、
    或位数不对的号码视为无效。

    Returns:
        10 位数字字符串，无效时返回 None。
    """
    if not raw:
        return None
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10 or digits[0] in "01":
        return None
    return digits
