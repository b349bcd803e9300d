"""
Example handler script.

Executed once before any client connects, with two globals:
``simulator`` (MQTTSimulator) and ``logger``.
"""

import random
import time


def sensor_reading(device_id):
    return {
        "deviceId": device_id,
        "timestamp": int(time.time() * 1000),
        "temperature": round(random.uniform(18.0, 35.0), 2),
        "humidity": round(random.uniform(30.0, 80.0), 2),
    }


def read_property(message, session):
    session.publish("/read-property-reply", {
        "messageId": message.get("messageId"),
        "deviceId": message.get("deviceId"),
        "success": True,
        "properties": sensor_reading(message.get("deviceId")),
    })


def invoke_function(message, session):
    logger.info(f"{session.client_id} invoked {message.get('function')}")
    session.publish("/invoke-function-reply", {
        "messageId": message.get("messageId"),
        "deviceId": message.get("deviceId"),
        "success": True,
        "output": "ok",
    })


def child_read_property(message, session):
    device_id = message.get("deviceId")
    session.publish_to_child_device("/read-property-reply", device_id, {
        "messageId": message.get("messageId"),
        "success": True,
        "properties": sensor_reading(device_id),
    })


def report_event(remaining, session):
    session.publish("/fire_alarm/department/1/1", {
        "deviceId": session.client_id,
        "alarmLevel": random.randint(1, 5),
        "remaining": remaining,
        "timestamp": int(time.time() * 1000),
    })


def connected(session):
    session.subscribe("/read-property")
    session.subscribe("/invoke-function")
    session.subscribe("/child-device-message")


simulator.bind_handler("/read-property", read_property)
simulator.bind_handler("/invoke-function", invoke_function)
simulator.bind_child_handler("/read-property", child_read_property)
simulator.on_connect(connected)
simulator.on_event(report_event)
