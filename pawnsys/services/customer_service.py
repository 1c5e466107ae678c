"""Customer records and their aggregate pledge counters."""
import logging
import re

from pawnsys.config import STORAGE_KEYS, CUSTOMER_ID_PREFIX
from pawnsys.calculations import resolve_now, round_currency
from pawnsys.data_structures import Customer
from pawnsys.exceptions import CustomerNotFoundError, ValidationError
from pawnsys.services import audit_log

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'ic_number', 'phone')


def normalize_ic(ic_number):
    """IC numbers are stored without dashes or spaces."""
    return re.sub(r"[-\s]", "", ic_number or "")


class CustomerService:
    """Creates customers and keeps their pledge counters current.

    Counters are adjusted incrementally when pledges are created and
    redeemed; they are not rebuilt by scanning the pledge collection.
    """

    def __init__(self, storage, audit_logger=None):
        self.storage = storage
        self.audit = audit_logger

    def _load(self):
        return [Customer.from_dict(c) for c in self.storage.get(STORAGE_KEYS['customers'], [])]

    def _save(self, customers):
        self.storage.set(STORAGE_KEYS['customers'], [c.to_dict() for c in customers])

    def _next_id(self, customers):
        max_num = 0
        for c in customers:
            try:
                num = int(c.id.split('-')[1])
                if num > max_num:
                    max_num = num
            except (IndexError, ValueError):
                pass
        return f"{CUSTOMER_ID_PREFIX}-{max_num + 1:06d}"

    def _check_ic_free(self, customers, ic_number, exclude_id=None):
        if ic_number and any(c.ic_number == ic_number and c.id != exclude_id for c in customers):
            raise ValidationError(f"IC number {ic_number} is already registered", field="ic_number")

    def create_customer(self, name, ic_number="", phone="", user="System", now=None):
        now = resolve_now(now)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Customer name is required", field="name")
        ic_number = normalize_ic(ic_number)

        customers = self._load()
        self._check_ic_free(customers, ic_number)

        customer = Customer(
            id=self._next_id(customers),
            name=name,
            ic_number=ic_number,
            phone=(phone or "").strip(),
            created_at=now,
        )
        customers.append(customer)
        self._save(customers)

        if self.audit:
            self.audit.log(audit_log.CREATE, "customer", f"Created new customer {customer.id}",
                           {'customer_id': customer.id, 'name': name}, user=user, now=now)
        logger.info(f"Customer {customer.id} created")
        return customer

    def update_customer(self, customer_id, user="System", now=None, **fields):
        """Edit a customer's name, IC number or phone.

        Raises:
            ValidationError: Unknown field, blank name or IC already in use.
            CustomerNotFoundError: Unknown customer.
        """
        now = resolve_now(now)
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot edit customer field(s): {', '.join(sorted(unknown))}",
                                  field=sorted(unknown)[0])

        customers = self._load()
        customer = next((c for c in customers if c.id == customer_id), None)
        if customer is None:
            raise CustomerNotFoundError(customer_id)

        if 'name' in fields:
            fields['name'] = (fields['name'] or "").strip()
            if not fields['name']:
                raise ValidationError("Customer name is required", field="name")
        if 'ic_number' in fields:
            fields['ic_number'] = normalize_ic(fields['ic_number'])
            self._check_ic_free(customers, fields['ic_number'], exclude_id=customer_id)
        if 'phone' in fields:
            fields['phone'] = (fields['phone'] or "").strip()

        changes = {k: {'old': getattr(customer, k), 'new': v}
                   for k, v in fields.items() if getattr(customer, k) != v}
        for key, value in fields.items():
            setattr(customer, key, value)
        customer.updated_at = now

        with self.storage.transaction():
            self._save(customers)
            if self.audit:
                self.audit.log(audit_log.UPDATE, "customer", f"Updated customer {customer_id}",
                               {'customer_id': customer_id, 'changes': changes}, user=user, now=now)
        logger.info(f"Customer {customer_id} updated: {', '.join(changes) or 'no changes'}")
        return customer

    def get_customer(self, customer_id):
        for c in self._load():
            if c.id == customer_id:
                return c
        raise CustomerNotFoundError(customer_id)

    def list_customers(self, query=None):
        """All customers, optionally filtered by name/IC/phone substring."""
        customers = self._load()
        if not query:
            return customers
        q = query.strip().lower()
        ic_q = normalize_ic(q)
        return [c for c in customers
                if q in c.name.lower() or (ic_q and ic_q in c.ic_number.lower()) or q in c.phone.lower()]

    def find_by_ic(self, ic_number):
        wanted = normalize_ic(ic_number)
        for c in self._load():
            if wanted and c.ic_number == wanted:
                return c
        raise CustomerNotFoundError(ic_number=ic_number)

    def _update(self, customer_id, mutate):
        customers = self._load()
        for c in customers:
            if c.id == customer_id:
                mutate(c)
                self._save(customers)
                return c
        raise CustomerNotFoundError(customer_id)

    def record_new_pledge(self, customer_id, loan_amount, now=None):
        now = resolve_now(now)

        def mutate(c):
            c.active_pledges += 1
            c.total_pledges += 1
            c.total_amount = round_currency(c.total_amount + loan_amount)
            c.last_visit = now
        return self._update(customer_id, mutate)

    def record_visit(self, customer_id, now=None):
        now = resolve_now(now)

        def mutate(c):
            c.last_visit = now
        return self._update(customer_id, mutate)

    def record_redemption(self, customer_id, now=None):
        now = resolve_now(now)

        def mutate(c):
            c.active_pledges = max(0, c.active_pledges - 1)
            c.last_visit = now
        return self._update(customer_id, mutate)
