"""
文档处理工作单元

分类、抽取和业务处理的确定性替身实现，输入输出契约与文档处理流水线一致。
"""
import copy
import hashlib
import json
import logging
from datetime import datetime
from typing import Dict, Any, Tuple

from ..config import HandlerEnvironment
from .unit_registry import UnitRegistry


logger = logging.getLogger(__name__)


DOCUMENT_TYPES = ["INVOICE", "RECEIPT", "PURCHASE_ORDER", "CONTRACT", "FORM"]

EXTRACTED_FIELDS: Dict[str, Dict[str, Any]] = {
    "INVOICE": {
        "invoiceNumber": "INV-2025-001234",
        "invoiceDate": "2025-10-30",
        "dueDate": "2025-11-30",
        "vendorName": "Acme Corp",
        "totalAmount": 15000.5,
        "currency": "USD",
        "lineItems": [
            {"description": "Product A", "quantity": 10, "unitPrice": 1000, "amount": 10000},
            {"description": "Product B", "quantity": 5, "unitPrice": 1000.1, "amount": 5000.5}
        ]
    },
    "RECEIPT": {
        "receiptNumber": "RCP-2025-567890",
        "date": "2025-10-30",
        "merchantName": "Tech Store Inc",
        "totalAmount": 2499.99,
        "currency": "USD",
        "paymentMethod": "Credit Card"
    },
    "PURCHASE_ORDER": {
        "poNumber": "PO-2025-789012",
        "orderDate": "2025-10-30",
        "deliveryDate": "2025-11-15",
        "supplier": "Global Supplies Ltd",
        "totalAmount": 50000.0,
        "currency": "USD"
    },
    "CONTRACT": {
        "contractNumber": "CNT-2025-345678",
        "effectiveDate": "2025-11-01",
        "expirationDate": "2026-10-31",
        "parties": ["Company A", "Company B"],
        "contractValue": 1000000.0,
        "currency": "USD"
    }
}

CLASSIFY_SCHEMA = {
    "type": "object",
    "anyOf": [
        {"required": ["documentId"]},
        {"required": ["id"]}
    ]
}

EXTRACT_SCHEMA = {
    "type": "object",
    "required": ["documentType"],
    "properties": {
        "documentType": {"type": "string"},
        "config": {"type": "object"}
    }
}

PROCESS_SCHEMA = {
    "type": "object",
    "required": ["actionType"],
    "properties": {
        "actionType": {"type": "string", "minLength": 1},
        "extractedData": {"type": "object"},
        "documentId": {"type": "string"}
    }
}


def resolve_document_reference(payload: Dict[str, Any]) -> Tuple[str, str]:
    """
    读取文档标识和存储位置

    优先使用 documentId/documentUrl，兼容旧字段 id/s3Key。
    """
    document_id = payload.get("documentId")
    document_url = payload.get("documentUrl")
    if document_id is None and "id" in payload:
        logger.warning("Payload uses legacy field 'id'; prefer 'documentId'")
        document_id = payload["id"]
    if document_url is None and "s3Key" in payload:
        logger.warning("Payload uses legacy field 's3Key'; prefer 'documentUrl'")
        document_url = payload["s3Key"]
    return str(document_id), document_url or ""


def classify_document(document_id: str, environment: HandlerEnvironment) -> Dict[str, Any]:
    """根据文档标识的哈希确定性地给出分类结果"""
    digest = hashlib.sha256(document_id.encode("utf-8")).digest()
    document_type = DOCUMENT_TYPES[digest[0] % len(DOCUMENT_TYPES)]
    # 置信度落在 [0.7, 1.0)
    fraction = int.from_bytes(digest[1:3], "big") / 65536
    confidence = round(0.7 + fraction * 0.3, 4)
    return {
        "documentType": document_type,
        "confidence": confidence,
        "needManualReview": confidence < environment.min_confidence_threshold
    }


def extract_fields(document_type: str, document_url: str) -> Dict[str, Any]:
    """按文档类型给出抽取字段"""
    fields = EXTRACTED_FIELDS.get(document_type)
    if fields is not None:
        return copy.deepcopy(fields)
    return {
        "documentId": document_url,
        "extractionDate": datetime.utcnow().isoformat(),
        "status": "extracted"
    }


def register_document_units(registry: UnitRegistry, environment: HandlerEnvironment):
    """注册 document.classify / document.extract / document.process"""

    def classify(payload: Dict[str, Any]) -> Dict[str, Any]:
        document_id, document_url = resolve_document_reference(payload)
        result = classify_document(document_id, environment)
        logger.info(
            f"Classified document {document_id} ({document_url or 'no url'}) as "
            f"{result['documentType']} with confidence {result['confidence']}"
        )
        return result

    def extract(payload: Dict[str, Any]) -> Dict[str, Any]:
        document_type = payload["documentType"]
        _, document_url = resolve_document_reference(payload)
        fields = extract_fields(document_type, document_url)
        logger.info(f"Extracted {len(fields)} fields from {document_type} document")
        return {
            "extractedData": {
                "documentType": document_type,
                "fields": fields,
                "metadata": {
                    "extractionMethod": environment.extraction_method,
                    "confidence": 0.95,
                    "timestamp": datetime.utcnow().isoformat()
                }
            }
        }

    def process(payload: Dict[str, Any]) -> Dict[str, Any]:
        action_type = payload["actionType"]
        endpoints = {
            "processPayment": environment.payment_processor_endpoint,
            "createOrder": environment.order_management_endpoint
        }
        logger.info(
            f"Executing business action {action_type} "
            f"for document {payload.get('documentId', 'unknown')}"
        )
        return {
            "statusCode": 200,
            "body": json.dumps({
                "message": "Business Action executed",
                "actionType": action_type,
                "endpoint": endpoints.get(action_type, "")
            })
        }

    registry.register("document.classify", classify, input_schema=CLASSIFY_SCHEMA)
    registry.register("document.extract", extract, input_schema=EXTRACT_SCHEMA)
    registry.register("document.process", process, input_schema=PROCESS_SCHEMA)
