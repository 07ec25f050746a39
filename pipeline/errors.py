"""销售漏斗引擎的异常类型。"""


class PipelineError(Exception):
    """引擎异常基类"""


class RecordNotFoundError(PipelineError):
    """预约或到课记录不存在"""

    def __init__(self, kind: str, record_id: int) -> None:
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class InvalidOutcomeError(PipelineError):
    """结果参数无效（例如既没有预约ID也没有到课记录ID）"""
