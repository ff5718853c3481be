"""
robocopy 退出码解析

退出码是位掩码：
    bit 0 (1)  有文件被复制
    bit 1 (2)  发现目标多余的文件/目录
    bit 2 (4)  存在不匹配项
    bit 3+ (>=8) 复制失败
"""
from typing import List

FATAL_THRESHOLD = 8

# 退出码 16 同时用于"被拒绝/无法启动"的调用
REJECTED_EXIT_CODE = 16

EXIT_CODE_EXPLANATIONS = {
    0: "没有需要复制的文件，源和目标已同步",
    1: "文件已成功复制",
    2: "发现目标存在多余的文件或目录，没有文件被复制",
    3: "文件已复制，且目标存在多余的文件或目录",
    4: "发现不匹配的文件或目录，需要检查",
    5: "文件已复制，且存在不匹配项",
    6: "存在多余文件和不匹配项，没有文件被复制",
    7: "文件已复制，且存在多余文件和不匹配项",
}

_BIT_MEANINGS = [
    (1, "已复制文件"),
    (2, "存在多余文件/目录"),
    (4, "存在不匹配项"),
    (8, "部分文件复制失败"),
    (16, "严重错误，没有复制任何文件"),
]


def is_fatal(code: int) -> bool:
    """退出码 >= 8 表示致命，阶段不能假定成功继续"""
    return code >= FATAL_THRESHOLD


def explain(code: int) -> str:
    """返回退出码的人类可读解释"""
    if code < 0:
        return f"进程异常终止 (退出码 {code})"
    if code in EXIT_CODE_EXPLANATIONS:
        return EXIT_CODE_EXPLANATIONS[code]
    if code & 16:
        return "严重错误：robocopy 没有复制任何文件（参数错误、权限不足或路径不可达）"
    return "部分文件或目录复制失败，请查看日志"


def describe(code: int) -> List[str]:
    """按位解码退出码"""
    if code == 0:
        return [EXIT_CODE_EXPLANATIONS[0]]
    if code < 0:
        return [explain(code)]
    return [meaning for bit, meaning in _BIT_MEANINGS if code & bit]


def severity(code: int) -> str:
    """返回 'ok' / 'warn' / 'error'"""
    if is_fatal(code) or code < 0:
        return "error"
    if code in (0, 1):
        return "ok"
    return "warn"
