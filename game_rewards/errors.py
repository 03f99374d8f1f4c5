class GameRewardsError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class MalformedCallback(GameRewardsError):
    status_code = 400


class InvalidSignature(GameRewardsError):
    status_code = 403


class FraudRejected(GameRewardsError):
    status_code = 403

    def __init__(self, detail: str, risk_score: int, signals: list[str]):
        super().__init__(detail)
        self.risk_score = risk_score
        self.signals = signals


class CreditingFailed(GameRewardsError):
    status_code = 500


class ProviderDisabled(GameRewardsError):
    status_code = 400


class UserNotFound(GameRewardsError):
    status_code = 404


class ReportNotFound(GameRewardsError):
    status_code = 404


class TransactionNotFound(GameRewardsError):
    status_code = 404


class BalanceStoreError(Exception):
    pass


class UnknownBalanceAccount(BalanceStoreError):
    pass
