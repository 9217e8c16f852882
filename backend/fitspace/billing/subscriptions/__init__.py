from .state_machine import SubscriptionStateMachine, trial_used

__all__ = [
    'SubscriptionStateMachine',
    'trial_used',
]
