# services/loan_service/tasks.py
import logging

from celery import shared_task

from services.loan_service.engine import LoanPolicyEngine

logger = logging.getLogger("loan-maintenance")


@shared_task
def update_overdue_loans():
    """
    Periodic sweep: moves every open loan past its due date to OVERDUE.
    Scheduled by the beat entry in services/shared/celery.py.
    """
    engine = LoanPolicyEngine.from_env()
    transitioned = engine.update_overdue_loans()
    logger.info("Scheduled overdue sweep finished, %s loans transitioned", transitioned)
    return transitioned
