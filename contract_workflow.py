"""
Contract Workflow Service
Turns an accepted proposal into a contract with its escrow payment, and
closes contracts out when the client signs off on the work.
"""

from datetime import date, datetime
import logging

from escrow_service import EscrowError

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base error for proposal and contract workflows"""


class WorkflowForbidden(WorkflowError):
    """Actor does not own the resource"""


class WorkflowConflict(WorkflowError):
    """Resource is no longer in the state the workflow needs"""


class ContractWorkflow:
    """
    Proposal acceptance and contract completion.

    accept_proposal performs every write (proposal, project, contract,
    payment, escrow transaction, rejection of competing proposals) inside
    a single database transaction. If any step fails the session is rolled
    back and nothing from the attempt is persisted.
    """

    def __init__(self, db, Project, Proposal, Contract, escrow_service):
        """
        Args:
            db: SQLAlchemy database instance
            Project: Project model class
            Proposal: Proposal model class
            Contract: Contract model class
            escrow_service: EscrowService used to create and fund the payment
        """
        self.db = db
        self.Project = Project
        self.Proposal = Proposal
        self.Contract = Contract
        self.escrow_service = escrow_service

    def accept_proposal(self, proposal, actor_id, agreed_rate=None, start_date=None,
                        end_date=None, payment_amount=None):
        """
        Accept a pending proposal.

        Args:
            proposal: Proposal being accepted
            actor_id: Profile id of the caller, must own the project
            agreed_rate: Contract rate, defaults to the proposed rate
            start_date: Contract start, defaults to today
            end_date: Optional contract end
            payment_amount: Amount placed in escrow, defaults to agreed_rate.
                Zero leaves the payment pending.

        Returns:
            tuple: (contract, payment)
        """
        project = self.db.session.get(self.Project, proposal.project_id)
        if project is None or project.client_id != actor_id:
            raise WorkflowForbidden('Only the project owner can accept proposals')
        if proposal.status != 'pending':
            raise WorkflowConflict(f'Proposal is already {proposal.status}')
        if project.status != 'open':
            raise WorkflowConflict('This project is no longer accepting proposals')

        if agreed_rate is None:
            agreed_rate = proposal.proposed_rate
        if payment_amount is None:
            payment_amount = agreed_rate
        start_date = start_date or date.today()
        if end_date and end_date < start_date:
            raise WorkflowError('End date cannot be before start date')

        try:
            self._compare_and_set(self.Proposal, proposal.id, 'pending', 'accepted')
            self._compare_and_set(self.Project, project.id, 'open', 'in_progress')

            contract = self.Contract(
                project_id=project.id,
                client_id=project.client_id,
                freelancer_id=proposal.freelancer_id,
                proposal_id=proposal.id,
                agreed_rate=round(float(agreed_rate), 2),
                start_date=start_date,
                end_date=end_date
            )
            self.db.session.add(contract)
            self.db.session.flush()

            payment = self.escrow_service.create_payment(contract, payment_amount, commit=False)
            if payment_amount and payment_amount > 0:
                self.escrow_service.escrow(payment, actor_id, commit=False)

            self.db.session.query(self.Proposal).filter(
                self.Proposal.project_id == project.id,
                self.Proposal.id != proposal.id,
                self.Proposal.status == 'pending'
            ).update({'status': 'rejected', 'updated_at': datetime.utcnow()},
                     synchronize_session=False)

            self.db.session.commit()
        except (WorkflowError, EscrowError):
            self.db.session.rollback()
            raise
        except Exception:
            self.db.session.rollback()
            logger.exception(f"Accepting proposal {proposal.id} failed, rolled back")
            raise

        self.db.session.refresh(proposal)
        self.db.session.refresh(project)
        logger.info(f"Proposal {proposal.id} accepted as contract {contract.id}")
        return contract, payment

    def reject_proposal(self, proposal, actor_id):
        """Reject a pending proposal (project owner only)"""
        project = self.db.session.get(self.Project, proposal.project_id)
        if project is None or project.client_id != actor_id:
            raise WorkflowForbidden('Only the project owner can reject proposals')

        try:
            self._compare_and_set(self.Proposal, proposal.id, 'pending', 'rejected')
            self.db.session.commit()
        except WorkflowError:
            self.db.session.rollback()
            raise

        self.db.session.refresh(proposal)
        return proposal

    def complete_contract(self, contract, actor_id):
        """Client signs off on the work; the project becomes completed"""
        if contract.client_id != actor_id:
            raise WorkflowForbidden('Only the client can complete this contract')

        try:
            self._compare_and_set(self.Project, contract.project_id, 'in_progress', 'completed')
            if contract.end_date is None:
                contract.end_date = max(date.today(), contract.start_date or date.today())
            self.db.session.commit()
        except WorkflowError:
            self.db.session.rollback()
            raise

        self.db.session.refresh(contract)
        logger.info(f"Contract {contract.id} completed")
        return contract

    def _compare_and_set(self, Model, row_id, expected_status, new_status):
        updated = self.db.session.query(Model).filter(
            Model.id == row_id,
            Model.status == expected_status
        ).update({'status': new_status, 'updated_at': datetime.utcnow()},
                 synchronize_session=False)
        if updated != 1:
            raise WorkflowConflict(
                f'{Model.__name__} {row_id} is no longer {expected_status}'
            )
