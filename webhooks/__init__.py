from webhooks.reconciler import (
    InboundDispatcher,
    InboundReconciler,
    resolve_quiz_answer,
    verify_subscription,
)

__all__ = ["InboundDispatcher", "InboundReconciler", "resolve_quiz_answer", "verify_subscription"]
