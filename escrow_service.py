"""
Escrow Payment Service
Moves contract payments through the escrow lifecycle and records every
status change in the append-only transaction log.

Lifecycle: pending -> escrowed -> released | refunded
"""

from datetime import datetime
import logging

logger = logging.getLogger(__name__)


class EscrowError(Exception):
    """Base error for escrow operations"""


class PaymentNotAllowed(EscrowError):
    """Actor is not allowed to move this payment"""


class InvalidTransition(EscrowError):
    """Payment is not in the state the operation requires"""

    def __init__(self, payment_id, current_status, target_status):
        self.payment_id = payment_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Payment {payment_id} cannot move from '{current_status}' to '{target_status}'"
        )


class InvalidAmount(EscrowError):
    """Payment amount is missing or not positive"""


# target status -> (required current status, transaction type, timestamp column)
PAYMENT_TRANSITIONS = {
    'escrowed': ('pending', 'escrow', 'escrow_date'),
    'released': ('escrowed', 'release', 'release_date'),
    'refunded': ('escrowed', 'refund', 'refund_date'),
}

TERMINAL_STATUSES = {'released', 'refunded'}


def can_transition(current_status, target_status):
    """Check whether a payment may move from current_status to target_status"""
    if current_status in TERMINAL_STATUSES:
        return False
    rule = PAYMENT_TRANSITIONS.get(target_status)
    return rule is not None and rule[0] == current_status


class EscrowService:
    """
    Escrow state machine for contract payments.

    Only the client party of the contract may fund, release or refund a
    payment. Status changes are written with a conditional UPDATE on the
    expected current status, so a double submit or two racing tabs can only
    move the payment once; the loser gets InvalidTransition.
    """

    def __init__(self, db, Payment, Transaction):
        """
        Args:
            db: SQLAlchemy database instance
            Payment: Payment model class
            Transaction: Transaction model class
        """
        self.db = db
        self.Payment = Payment
        self.Transaction = Transaction

    def create_payment(self, contract, amount=None, commit=True):
        """Attach a pending payment to a contract"""
        if amount is not None and amount < 0:
            raise InvalidAmount('Payment amount cannot be negative')

        payment = self.Payment(
            contract_id=contract.id,
            amount=round(float(amount), 2) if amount else 0.0,
            status='pending'
        )
        self.db.session.add(payment)
        self.db.session.flush()
        if commit:
            self.db.session.commit()
        return payment

    def escrow(self, payment, actor_id, amount=None, commit=True):
        """Fund a pending payment and hold it in escrow"""
        self._check_client(payment, actor_id, 'escrow')

        if amount is not None:
            if amount <= 0:
                raise InvalidAmount('Escrow amount must be greater than zero')
            if payment.status == 'pending':
                payment.amount = round(float(amount), 2)
                self.db.session.flush()

        if not payment.amount or payment.amount <= 0:
            raise InvalidAmount('Escrow amount must be greater than zero')

        return self._transition(
            payment, 'escrowed',
            description='Initial payment placed in escrow',
            commit=commit
        )

    def release(self, payment, actor_id, commit=True):
        """Release escrowed funds to the freelancer"""
        self._check_client(payment, actor_id, 'release')
        return self._transition(
            payment, 'released',
            description='Payment released by client',
            commit=commit
        )

    def refund(self, payment, actor_id, reason=None, commit=True):
        """Return escrowed funds to the client"""
        self._check_client(payment, actor_id, 'refund')
        return self._transition(
            payment, 'refunded',
            description=reason or 'Payment refunded by client',
            commit=commit
        )

    def _check_client(self, payment, actor_id, action):
        contract = payment.contract
        if contract is None or contract.client_id != actor_id:
            logger.warning(
                f"Blocked {action} on payment {payment.id} by profile {actor_id}"
            )
            raise PaymentNotAllowed(f'Only the client can {action} this payment')

    def _transition(self, payment, target_status, description, commit=True):
        expected_status, tx_type, date_column = PAYMENT_TRANSITIONS[target_status]
        now = datetime.utcnow()

        updated = self.db.session.query(self.Payment).filter(
            self.Payment.id == payment.id,
            self.Payment.status == expected_status
        ).update({
            'status': target_status,
            date_column: now,
            'updated_at': now
        }, synchronize_session=False)

        if updated != 1:
            self.db.session.refresh(payment)
            raise InvalidTransition(payment.id, payment.status, target_status)

        self.db.session.refresh(payment)

        transaction = self.Transaction(
            payment_id=payment.id,
            type=tx_type,
            amount=payment.amount,
            description=description
        )
        self.db.session.add(transaction)

        if commit:
            self.db.session.commit()
        else:
            self.db.session.flush()

        logger.info(
            f"Payment {payment.id}: {expected_status} -> {target_status} ({payment.amount:.2f})"
        )
        return transaction
