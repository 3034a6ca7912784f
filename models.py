import datetime
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Numeric, JSON,
    UniqueConstraint, func,
)
from sqlalchemy.orm import relationship
from db import Base


def _uuid():
    return str(uuid.uuid4())


def _num(value):
    """Numeric column -> float for JSON (None stays None)."""
    if value is None:
        return None
    return float(value)


def _ts(value):
    return value.isoformat() if value else None


class User(Base):
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    email = Column(String(255))
    role = Column(String(32), nullable=True)  # assigned by an admin after registration
    status = Column(String(16), nullable=False, default='pending')
    sales_rep_name = Column(String(255))
    created_at = Column(DateTime, default=datetime.datetime.now)
    updated_at = Column(DateTime, default=datetime.datetime.now, onupdate=datetime.datetime.now)
    last_login = Column(DateTime)

    @property
    def is_active(self):
        return self.status == 'active'

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'status': self.status,
            'salesRepName': self.sales_rep_name,
            'createdAt': _ts(self.created_at),
            'lastLogin': _ts(self.last_login),
        }


class SecurityLog(Base):
    __tablename__ = 'security_logs'
    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, server_default=func.now(), nullable=False)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    message = Column(String, nullable=False)
    additional_data = Column(JSON)


class Customer(Base):
    __tablename__ = 'customers'

    dbx_customer_id = Column(String(255), primary_key=True)
    client_name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(50))
    street_address = Column(String(500), nullable=False, default='')
    city = Column(String(255), nullable=False, default='')
    state = Column(String(50), nullable=False, default='')
    zip = Column(String(20), nullable=False, default='')
    status = Column(String(32), nullable=False, default='pending_updates')
    deleted_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.datetime.now)
    updated_at = Column(DateTime, default=datetime.datetime.now)

    orders = relationship("Order", back_populates="customer", order_by="Order.created_at")

    def to_dict(self):
        return {
            'dbxCustomerId': self.dbx_customer_id,
            'clientName': self.client_name,
            'email': self.email,
            'phone': self.phone,
            'streetAddress': self.street_address,
            'city': self.city,
            'state': self.state,
            'zip': self.zip,
            'status': self.status,
            'deletedAt': _ts(self.deleted_at),
            'createdAt': _ts(self.created_at),
            'updatedAt': _ts(self.updated_at),
        }


class Order(Base):
    __tablename__ = 'orders'

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_id = Column(String(255), ForeignKey('customers.dbx_customer_id', ondelete='CASCADE'), nullable=False)
    order_no = Column(String(255), unique=True, nullable=False)
    order_date = Column(String(20))
    order_po = Column(String(255))
    order_due_date = Column(String(20))
    order_type = Column(String(100))
    order_delivered = Column(Boolean, default=False)
    quote_expiration_date = Column(String(20))
    order_grand_total = Column(Numeric(15, 2), nullable=False, default=0)
    progress_payments = Column(Text)
    balance_due = Column(Numeric(15, 2), nullable=False, default=0)
    sales_rep = Column(String(255))
    status = Column(String(32), nullable=False, default='pending_updates')
    stage = Column(String(32), default='waiting_for_permit')
    # MM/DD/YYYY strings
    contract_date = Column(String(20))
    first_build_invoice_date = Column(String(20))
    project_start_date = Column(String(20))
    project_end_date = Column(String(20))
    eml_filename = Column(String(500))
    created_at = Column(DateTime, default=datetime.datetime.now)
    updated_at = Column(DateTime, default=datetime.datetime.now)
    created_by = Column(String(36), ForeignKey('users.id', ondelete='SET NULL'))
    updated_by = Column(String(36), ForeignKey('users.id', ondelete='SET NULL'))

    customer = relationship("Customer", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.row_index",
                         cascade="all, delete-orphan")
    invoices = relationship("Invoice", back_populates="order", order_by="Invoice.row_index",
                            cascade="all, delete-orphan")

    def to_dict(self):
        return {
            'id': self.id,
            'customerId': self.customer_id,
            'orderNo': self.order_no,
            'orderDate': self.order_date,
            'orderPO': self.order_po,
            'orderDueDate': self.order_due_date,
            'orderType': self.order_type,
            'orderDelivered': bool(self.order_delivered),
            'quoteExpirationDate': self.quote_expiration_date,
            'orderGrandTotal': _num(self.order_grand_total),
            'progressPayments': self.progress_payments,
            'balanceDue': _num(self.balance_due),
            'salesRep': self.sales_rep,
            'status': self.status,
            'stage': self.stage,
            'contractDate': self.contract_date,
            'firstBuildInvoiceDate': self.first_build_invoice_date,
            'projectStartDate': self.project_start_date,
            'projectEndDate': self.project_end_date,
            'emlFilename': self.eml_filename,
            'createdAt': _ts(self.created_at),
            'updatedAt': _ts(self.updated_at),
        }


class OrderItem(Base):
    __tablename__ = 'order_items'

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    row_index = Column(Integer, nullable=False)
    column_a_label = Column(String(50))
    column_b_label = Column(String(50), default='Initial')
    product_service = Column(Text, nullable=False)
    qty = Column(Numeric(15, 2))
    rate = Column(Numeric(15, 2))
    amount = Column(Numeric(15, 2))
    progress_overall_pct = Column(Numeric(10, 2))
    completed_amount = Column(Numeric(15, 2))
    previously_invoiced_pct = Column(Numeric(10, 2))
    previously_invoiced_amount = Column(Numeric(15, 2))
    new_progress_pct = Column(Numeric(10, 2))
    this_bill = Column(Numeric(15, 2))
    item_type = Column(String(20), nullable=False)
    main_category = Column(String(255))
    sub_category = Column(String(255))
    created_at = Column(DateTime, default=datetime.datetime.now)
    updated_at = Column(DateTime, default=datetime.datetime.now)

    order = relationship("Order", back_populates="items")

    # JSON key -> column, shared by item edits and change logging
    EDITABLE_FIELDS = {
        'productService': 'product_service',
        'qty': 'qty',
        'rate': 'rate',
        'amount': 'amount',
        'progressOverallPct': 'progress_overall_pct',
        'completedAmount': 'completed_amount',
        'previouslyInvoicedPct': 'previously_invoiced_pct',
        'previouslyInvoicedAmount': 'previously_invoiced_amount',
        'newProgressPct': 'new_progress_pct',
        'thisBill': 'this_bill',
        'mainCategory': 'main_category',
        'subCategory': 'sub_category',
    }

    def to_dict(self):
        return {
            'id': self.id,
            'orderId': self.order_id,
            'rowIndex': self.row_index,
            'columnALabel': self.column_a_label,
            'columnBLabel': self.column_b_label,
            'productService': self.product_service,
            'qty': _num(self.qty),
            'rate': _num(self.rate),
            'amount': _num(self.amount),
            'progressOverallPct': _num(self.progress_overall_pct),
            'completedAmount': _num(self.completed_amount),
            'previouslyInvoicedPct': _num(self.previously_invoiced_pct),
            'previouslyInvoicedAmount': _num(self.previously_invoiced_amount),
            'newProgressPct': _num(self.new_progress_pct),
            'thisBill': _num(self.this_bill),
            'type': self.item_type,
            'mainCategory': self.main_category,
            'subCategory': self.sub_category,
        }


class Invoice(Base):
    __tablename__ = 'invoices'

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    invoice_number = Column(String(255))
    invoice_date = Column(String(20))
    invoice_amount = Column(Numeric(15, 2))
    payments_received = Column(Numeric(15, 2), nullable=False, default=0)
    exclude = Column(Boolean, nullable=False, default=False)
    row_index = Column(Integer, nullable=False)
    # [{"orderItemId": ..., "thisBillAmount": ...}]
    linked_line_items = Column(JSON)
    created_at = Column(DateTime, default=datetime.datetime.now)
    updated_at = Column(DateTime, default=datetime.datetime.now)

    order = relationship("Order", back_populates="invoices")

    def open_balance(self):
        return float(self.invoice_amount or 0) - float(self.payments_received or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'orderId': self.order_id,
            'invoiceNumber': self.invoice_number,
            'invoiceDate': self.invoice_date,
            'invoiceAmount': _num(self.invoice_amount),
            'paymentsReceived': _num(self.payments_received),
            'exclude': bool(self.exclude),
            'rowIndex': self.row_index,
            'linkedLineItems': self.linked_line_items or [],
        }


class ChangeHistory(Base):
    __tablename__ = 'change_history'

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey('orders.id', ondelete='CASCADE'))
    order_item_id = Column(String(36), ForeignKey('order_items.id', ondelete='SET NULL'))
    customer_id = Column(String(255), ForeignKey('customers.dbx_customer_id', ondelete='CASCADE'))
    change_type = Column(String(32), nullable=False)
    field_name = Column(String(255), nullable=False)
    old_value = Column(Text)
    new_value = Column(Text)
    row_index = Column(Integer)
    changed_by = Column(String(36), ForeignKey('users.id'), nullable=False)
    changed_at = Column(DateTime, default=datetime.datetime.now, nullable=False)

    user = relationship("User")
    customer = relationship("Customer")
    order = relationship("Order")

    def to_dict(self):
        return {
            'id': self.id,
            'changeType': self.change_type,
            'fieldName': self.field_name,
            'oldValue': self.old_value,
            'newValue': self.new_value,
            'rowIndex': self.row_index,
            'changedAt': _ts(self.changed_at),
            'changedBy': {
                'id': self.changed_by,
                'username': self.user.username if self.user else None,
            },
            'customerId': self.customer_id,
            'orderId': self.order_id,
            'orderItemId': self.order_item_id,
        }


class Vendor(Base):
    __tablename__ = 'vendors'

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), unique=True, nullable=False)
    email = Column(String(255))
    phone = Column(String(50))
    contact_person = Column(String(255))
    address = Column(String(500))
    city = Column(String(255))
    state = Column(String(50))
    zip = Column(String(20))
    category = Column(String(255))
    status = Column(String(16), nullable=False, default='active')
    notes = Column(Text)
    specialties = Column(JSON)
    created_at = Column(DateTime, default=datetime.datetime.now)
    updated_at = Column(DateTime, default=datetime.datetime.now)
    deleted_at = Column(DateTime)

    # JSON key -> column
    FIELDS = {
        'name': 'name',
        'email': 'email',
        'phone': 'phone',
        'contactPerson': 'contact_person',
        'address': 'address',
        'city': 'city',
        'state': 'state',
        'zip': 'zip',
        'category': 'category',
        'status': 'status',
        'notes': 'notes',
        'specialties': 'specialties',
    }

    def to_dict(self):
        data = {key: getattr(self, col) for key, col in self.FIELDS.items()}
        data.update({
            'id': self.id,
            'createdAt': _ts(self.created_at),
            'updatedAt': _ts(self.updated_at),
            'deletedAt': _ts(self.deleted_at),
        })
        return data


class OrderApproval(Base):
    __tablename__ = 'order_approvals'

    id = Column(String(36), primary_key=True, default=_uuid)
    reference_no = Column(String(20), unique=True, nullable=False)
    vendor_id = Column(String(36), ForeignKey('vendors.id', ondelete='RESTRICT'), nullable=False)
    customer_id = Column(String(255), ForeignKey('customers.dbx_customer_id', ondelete='RESTRICT'), nullable=False)
    order_id = Column(String(36), ForeignKey('orders.id', ondelete='SET NULL'), nullable=True)
    stage = Column(String(16), nullable=False, default='draft')
    pm_approved = Column(Boolean, nullable=False, default=False)
    vendor_approved = Column(Boolean, nullable=False, default=False)
    vendor_approved_at = Column(DateTime)
    date_created = Column(DateTime, default=datetime.datetime.now, nullable=False)
    created_by = Column(String(36), ForeignKey('users.id', ondelete='SET NULL'))
    sent_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.datetime.now, nullable=False)
    deleted_at = Column(DateTime)

    vendor = relationship("Vendor")
    customer = relationship("Customer")
    order = relationship("Order")
    creator = relationship("User")
    items = relationship("OrderApprovalItem", back_populates="approval",
                         cascade="all, delete-orphan", order_by="OrderApprovalItem.created_at")

    def to_dict(self):
        return {
            'id': self.id,
            'referenceNo': self.reference_no,
            'vendorId': self.vendor_id,
            'customerId': self.customer_id,
            'orderId': self.order_id,
            'stage': self.stage,
            'pmApproved': bool(self.pm_approved),
            'vendorApproved': bool(self.vendor_approved),
            'vendorApprovedAt': _ts(self.vendor_approved_at),
            'dateCreated': _ts(self.date_created),
            'createdBy': self.created_by,
            'sentAt': _ts(self.sent_at),
            'updatedAt': _ts(self.updated_at),
            'deletedAt': _ts(self.deleted_at),
        }


class OrderApprovalItem(Base):
    __tablename__ = 'order_approval_items'
    __table_args__ = (
        UniqueConstraint('order_approval_id', 'order_item_id', name='uq_order_approval_item'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    order_approval_id = Column(String(36), ForeignKey('order_approvals.id', ondelete='CASCADE'), nullable=False)
    # no FK: the snapshot must outlive item replacement on the order
    order_item_id = Column(String(36), nullable=False)
    product_service = Column(Text)
    amount = Column(Numeric(15, 2))
    qty = Column(Numeric(15, 2))
    rate = Column(Numeric(15, 2))
    negotiated_vendor_amount = Column(Numeric(15, 2))
    snapshot_date = Column(DateTime)
    created_at = Column(DateTime, default=datetime.datetime.now, nullable=False)

    approval = relationship("OrderApproval", back_populates="items")

    def to_dict(self):
        return {
            'id': self.id,
            'orderApprovalId': self.order_approval_id,
            'orderItemId': self.order_item_id,
            'productService': self.product_service,
            'qty': _num(self.qty),
            'rate': _num(self.rate),
            'amount': _num(self.amount),
            'negotiatedVendorAmount': _num(self.negotiated_vendor_amount),
            'snapshotDate': _ts(self.snapshot_date),
        }


class ReferenceNumberSequence(Base):
    __tablename__ = 'reference_number_sequences'

    id = Column(Integer, primary_key=True)
    year = Column(Integer, unique=True, nullable=False)
    last_sequence = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.datetime.now, nullable=False)


class AlertAcknowledgment(Base):
    __tablename__ = 'alert_acknowledgments'
    __table_args__ = (
        UniqueConstraint('customer_id', 'alert_type', name='uq_alert_ack_customer_type'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_id = Column(String(255), ForeignKey('customers.dbx_customer_id', ondelete='CASCADE'), nullable=False)
    alert_type = Column(String(100), nullable=False)
    acknowledged_by = Column(String(36), ForeignKey('users.id'), nullable=False)
    acknowledged_at = Column(DateTime, default=datetime.datetime.now, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'customerId': self.customer_id,
            'alertType': self.alert_type,
            'acknowledgedBy': self.acknowledged_by,
            'acknowledgedAt': _ts(self.acknowledged_at),
        }
