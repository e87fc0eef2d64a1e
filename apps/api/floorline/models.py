from floorline.crm.models import Appointment, Contact, ContactSubmission, Task
from floorline.notifications.models import EmailTemplate, SmsTemplate
from floorline.portal.models import CustomerProject, CustomerUser
from floorline.sales.models import Contract, Estimate, Invoice, Payment
from floorline.workflows.models import Workflow

__all__ = [
    "Appointment",
    "Contact",
    "ContactSubmission",
    "Contract",
    "CustomerProject",
    "CustomerUser",
    "EmailTemplate",
    "Estimate",
    "Invoice",
    "Payment",
    "SmsTemplate",
    "Task",
    "Workflow",
]
