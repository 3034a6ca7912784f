# Constants for the application

# User roles
ROLES = {
    'admin': 'Administrator',              # Full access, user management
    'contract_manager': 'Contract Manager', # Can edit contracts and approvals
    'sales_rep': 'Sales Rep',              # Sees only own contracts
    'accountant': 'Accountant',            # Invoices and payments
    'viewer': 'Viewer',                    # Read-only access
    'vendor': 'Vendor',                    # Negotiation portal only
}

USER_STATUS = ('pending', 'active', 'suspended')

# Roles that may write contract / order data
EDITOR_ROLES = ['admin', 'contract_manager']
STAFF_ROLES = ['admin', 'contract_manager', 'sales_rep', 'accountant', 'viewer']
# Roles that may record invoices and payments
INVOICE_ROLES = ['admin', 'contract_manager', 'accountant']

# Customer / order status
CUSTOMER_STATUS = {
    'PENDING_UPDATES': 'pending_updates',
    'COMPLETED': 'completed',
}

ORDER_STATUS = CUSTOMER_STATUS

# Project stage of an order
PROJECT_STAGES = {
    'waiting_for_permit': 'Waiting for Permit',
    'active': 'Active',
    'completed': 'Completed',
}
DEFAULT_PROJECT_STAGE = 'waiting_for_permit'

# Order approval (vendor negotiation) stages. 'sent' is kept for old rows only.
APPROVAL_STAGES = ['draft', 'negotiating', 'approved']
APPROVAL_STAGE_LABELS = {
    'draft': 'Draft',
    'sent': 'Sent',
    'negotiating': 'Negotiating',
    'approved': 'Approved',
}
VENDOR_VISIBLE_STAGES = ['negotiating', 'approved']

VENDOR_STATUS = ('active', 'inactive')

# Order item types
ITEM_TYPES = ('maincategory', 'subcategory', 'item')

# Spreadsheet column labels
COLUMN_A_LABELS = {
    'maincategory': '1 - Header',
    'subcategory': '1 - Subheader',
    'item': '1 - Detail',
    'blank': '1 - Blank Row',
}
COLUMN_B_INITIAL = 'Initial'
COLUMN_B_ADDENDUM = 'Addendum'

# Change history types
CHANGE_TYPES = (
    'cell_edit',
    'row_add',
    'row_delete',
    'row_update',
    'customer_edit',
    'order_edit',
    'contract_add',
    'stage_update',
    'customer_delete',
    'customer_restore',
)

# Invoice rows live in a fixed block of the billing sheet
INVOICE_ROW_START = 354
INVOICE_ROW_END = 391
MAX_INVOICES = INVOICE_ROW_END - INVOICE_ROW_START + 1

# Days a soft-deleted customer stays in the trash
TRASH_RETENTION_DAYS = 30

ALERT_ORDER_ITEMS_MISMATCH = 'order_items_mismatch'

DATE_FORMAT = '%m/%d/%Y'

ALLOWED_UPLOAD_EXTENSIONS = {'eml'}
VENDOR_IMPORT_EXTENSIONS = {'xlsx', 'csv'}
