# -*- coding: utf-8 -*-
"""
api_handler.py - HTTP API endpoints for external access

Responsibilities:
- Register HTTP API endpoints using Appdaemon's register_endpoint()
- Bridge between HTTP requests and internal service handlers
- Provide JSON responses with HTTP status codes
"""

import traceback
from typing import Any, Dict


class APIHandler:
    """Handles HTTP API endpoints for external access to PyStove services."""

    # endpoint name -> ServiceHandler method name
    ENDPOINTS = {
        "pystove_track_usage": "svc_track_usage",
        "pystove_get_maintenance": "svc_get_maintenance",
        "pystove_confirm_cleaning": "svc_confirm_cleaning",
        "pystove_set_target_hours": "svc_set_target_hours",
        "pystove_can_ignite": "svc_can_ignite",
        "pystove_get_coordination": "svc_get_coordination",
        "pystove_reset_coordination": "svc_reset_coordination",
        "pystove_get_preferences": "svc_get_preferences",
        "pystove_set_preferences": "svc_set_preferences",
        "pystove_get_events": "svc_get_events",
        "pystove_get_event_stats": "svc_get_event_stats",
    }

    def __init__(self, ad, service_handler):
        """Initialize the API handler.

        Args:
            ad: AppDaemon API reference
            service_handler: ServiceHandler instance for executing operations
        """
        self.ad = ad
        self.service_handler = service_handler

    def register_all(self) -> None:
        """Register all HTTP API endpoints."""
        for endpoint, method in self.ENDPOINTS.items():
            self.ad.register_endpoint(self._make_endpoint(method), endpoint)

        self.ad.log("Registered PyStove HTTP API endpoints")

    def _make_endpoint(self, method_name: str):
        callback = getattr(self.service_handler, method_name)

        def endpoint(namespace, data: Dict[str, Any]) -> tuple:
            # In Appdaemon, the JSON body is passed as the first parameter (namespace)
            request_body = namespace if isinstance(namespace, dict) else {}
            return self._handle_request(callback, request_body)

        endpoint.__name__ = f"api_{method_name[len('svc_'):]}"
        return endpoint

    def _handle_request(self, callback, request_body: Dict[str, Any]) -> tuple:
        """Common request handler with error handling.

        Args:
            callback: Service callback function to invoke
            request_body: Request parameters from HTTP body

        Returns:
            Tuple of (response_dict, status_code)
        """
        try:
            result = callback("api", "pystove", "api", request_body)

            if isinstance(result, dict):
                if result.get("success", True):
                    return result, 200
                else:
                    return result, 400
            else:
                return {"success": True}, 200

        except Exception as e:
            self.ad.log(f"API request error: {e}", level="ERROR")
            self.ad.log(f"Traceback: {traceback.format_exc()}", level="ERROR")
            return {"success": False, "error": str(e)}, 500
