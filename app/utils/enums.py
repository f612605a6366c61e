import enum


class Role(str, enum.Enum):
    member = "member"
    trainer = "trainer"
    admin = "admin"


class MembershipStatus(str, enum.Enum):
    pending_activation = "pending_activation"
    active = "active"
    payment_failed = "payment_failed"
    cancelled = "cancelled"
    superseded = "superseded"
    upgraded = "upgraded"


class PaymentType(str, enum.Enum):
    one_time = "one_time"
    subscription = "subscription"


class SessionType(str, enum.Enum):
    course = "course"
    open_gym = "open_gym"


class CourseStatus(str, enum.Enum):
    active = "active"
    cancelled = "cancelled"


class RegistrationStatus(str, enum.Enum):
    registered = "registered"
    waitlist = "waitlist"
    cancelled = "cancelled"


class PurchaseStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class PurchaseType(str, enum.Enum):
    membership = "membership"
    credit_topup = "credit_topup"
    membership_upgrade = "membership_upgrade"
    credits_to_subscription = "credits_to_subscription"
    product = "product"


class CreditAction(str, enum.Enum):
    add = "add"
    subtract = "subtract"
    set = "set"
