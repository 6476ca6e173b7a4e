from typing import ClassVar

from docmapper.documents.BaseDocument import BaseDocument


class EmbeddedDocument(BaseDocument):
    """
    Schema-validated value stored inline in the record of the document that holds it.

    Has no ``_id`` and no collection. Its hooks run in the phases of the owning document.
    """

    _document_class: ClassVar[str] = "embedded"
