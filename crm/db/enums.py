# crm/db/enums.py
import enum

# User related enums
class UserStatus(enum.Enum):
    active = "active"
    suspended = "suspended"
    deactivated = "deactivated"


# AuditLog related enums (closed sets, values are persisted)
class AuditEntityType(enum.Enum):
    User = "user"
    Lead = "lead"
    Client = "client"
    ClientContact = "client_contact"
    Ticket = "ticket"
    Payment = "payment"
    Subscription = "subscription"
    SingleCharge = "single_charge"
    Credential = "credential"
    Whatsapp = "whatsapp"
    Session = "session"
    Role = "role"
    DevelopmentProject = "development_project"
    DevelopmentProjectLog = "development_project_log"


class AuditAction(enum.Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
    decrypt = "decrypt"
    login = "login"
    logout = "logout"
    failed_login = "failed_login"


# RBAC: flat permission strings, compared by exact equality
class Permission(str, enum.Enum):
    LEADS_READ = "leads.read"
    LEADS_WRITE = "leads.write"
    CLIENTS_READ = "clients.read"
    CLIENTS_WRITE = "clients.write"
    CREDENTIALS_READ = "credentials.read"
    CREDENTIALS_DECRYPT = "credentials.decrypt"
    TICKETS_READ = "tickets.read"
    TICKETS_WRITE = "tickets.write"
    PAYMENTS_READ = "payments.read"
    PAYMENTS_WRITE = "payments.write"
    USERS_MANAGE = "users.manage"
    ROLES_MANAGE = "roles.manage"
    AUDIT_READ = "audit.read"


# BankAccount related enums
class BankAccountType(enum.Enum):
    savings = "savings"
    checking = "checking"


class Currency(enum.Enum):
    DOP = "DOP"
    USD = "USD"
