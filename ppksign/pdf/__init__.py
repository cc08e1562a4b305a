# *-* coding: utf-8 *-*
from ppksign.pdf import cms, ppklite
from ppksign.pdf.verify import verify

__all__ = ["cms", "ppklite", "verify"]
