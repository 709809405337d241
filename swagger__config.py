"""
Swagger/OpenAPI configuration for the Salon Back Office API
"""

SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec",
            "route": "/apispec.json",
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/api/docs",
}

SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "Salon Back Office API",
        "description": "Appointment scheduling, online booking and checkout for salon businesses",
        "version": "1.0.0",
    },
    "host": "",
    "basePath": "/",
    "schemes": ["http", "https"],
    "securityDefinitions": {
        "Bearer": {
            "type": "apiKey",
            "name": "Authorization",
            "in": "header",
            "description": 'JWT Authorization header using the Bearer scheme. Example: "Authorization: Bearer {token}"',
        }
    },
    "security": [{"Bearer": []}],
    "tags": [
        {"name": "Appointments", "description": "Availability, booking and appointment edits"},
        {"name": "Checkout", "description": "Invoices and payments"},
        {"name": "Promotions", "description": "Discount code validation"},
        {"name": "Public Booking", "description": "Customer self-service booking by business slug"},
        {"name": "Utility", "description": "Service status"},
    ],
    "definitions": {
        "Error": {
            "type": "object",
            "properties": {
                "success": {"type": "boolean", "example": False},
                "message": {"type": "string"},
            },
        },
        "Success": {
            "type": "object",
            "properties": {
                "success": {"type": "boolean", "example": True},
                "data": {"type": "object"},
            },
        },
        "Slot": {
            "type": "object",
            "properties": {
                "time": {"type": "string", "example": "09:30"},
                "end_time": {"type": "string", "example": "10:00"},
                "start": {"type": "string", "format": "date-time"},
                "end": {"type": "string", "format": "date-time"},
                "available": {"type": "boolean"},
            },
        },
        "Appointment": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "customer_id": {"type": "integer"},
                "service_id": {"type": "integer"},
                "staff_id": {"type": "integer"},
                "start_time": {"type": "string", "format": "date-time"},
                "end_time": {"type": "string", "format": "date-time"},
                "status": {
                    "type": "string",
                    "enum": [
                        "scheduled",
                        "confirmed",
                        "in_progress",
                        "completed",
                        "cancelled",
                        "no_show",
                    ],
                },
                "payment_status": {"type": "string"},
                "original_price": {"type": "number"},
                "discount_amount": {"type": "number"},
                "final_price": {"type": "number"},
            },
        },
        "Invoice": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "invoice_number": {"type": "string", "example": "INV-0001"},
                "subtotal": {"type": "number"},
                "discount_amount": {"type": "number"},
                "tax_amount": {"type": "number"},
                "tip": {"type": "number"},
                "total": {"type": "number"},
                "amount_paid": {"type": "number"},
                "status": {"type": "string", "enum": ["sent", "partially_paid", "paid", "void"]},
            },
        },
    },
}
