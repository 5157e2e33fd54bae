from common.exceptions import ConflictError, DomainValidationError, NotFoundError


class DocumentNotFound(NotFoundError):
    default_message = "Document was not found."


class InvoiceNotFound(DocumentNotFound):
    def __init__(self, invoice_id):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} was not found.")


class ProductNotFound(NotFoundError):
    def __init__(self, invoice_id, index):
        self.invoice_id = invoice_id
        self.index = index
        super().__init__(f"Invoice {invoice_id} has no product at index {index}.")


class LedgerValidationError(DomainValidationError):
    pass


class TransactionConflict(ConflictError):
    pass
