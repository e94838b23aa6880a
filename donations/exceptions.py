class DonationError(Exception):
    code = 'donation_error'


class IllegalTransitionError(DonationError):
    code = 'illegal_transition'

    def __init__(self, source, target, message=''):
        self.source = source
        self.target = target
        super().__init__(message or f"Недопустимый переход статуса: {source} -> {target}")


class TransitionNotPermittedError(IllegalTransitionError):
    """Переход существует, но этот участник не может его выполнить."""
    code = 'transition_not_permitted'

    def __init__(self, source, target, actor):
        self.actor = actor
        super().__init__(source, target, f"Переход {source} -> {target} недоступен для '{actor}'")


class BatchTransitionError(IllegalTransitionError):
    code = 'batch_not_allowed'


class DeliveryProofRequiredError(DonationError):
    code = 'proof_required'

    def __init__(self, donation_public_id):
        self.donation_public_id = donation_public_id
        super().__init__(
            f"Перед завершением загрузите подтверждение доставки для {donation_public_id}"
        )
