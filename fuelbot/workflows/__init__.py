from fuelbot.workflows.fuel_entry import FuelEntryWorkflow
from fuelbot.workflows.note_payment import NotePaymentWorkflow
from fuelbot.workflows.onboarding import OnboardingWorkflow
from fuelbot.workflows.record_deactivation import RecordDeactivationWorkflow

__all__ = ["OnboardingWorkflow", "FuelEntryWorkflow", "NotePaymentWorkflow", "RecordDeactivationWorkflow"]
