from fastapi import APIRouter, HTTPException
from typing import Dict, Any, List, Optional
from datetime import timedelta
from pydantic import BaseModel, Field
from ...models.commands import Command, CommandAction
from ...utils.exceptions import InvalidModeError, TargetNotFoundError
from ...utils.logging import get_logger
from ..dependencies import CommandQueueDependency

logger = get_logger(__name__)

command_router = APIRouter()

# Devices drain their command queue at roughly this rate
COMMAND_EXECUTION_ESTIMATE_MS = 500


'''
# Submit command
response = await client.post(f"/api/v1/targets/{target_id}/commands", json={"action": "ON", "duration": 60})
command_id = response.json()["commandId"]

# Check status
status = await client.get(f"/api/v1/commands/{command_id}")
'''


class CommandRequest(BaseModel):
    action: CommandAction
    duration: Optional[int] = Field(None, ge=0, description="Seconds before an automatic OFF")
    issued_by: Optional[str] = None


@command_router.post("/targets/{target_id}/commands")
async def send_command(target_id: str, request: CommandRequest,
                       commands: CommandQueueDependency = None) -> Dict[str, Any]:
    try:
        command = await commands.enqueue(
            target_id, request.action, duration=request.duration, issued_by=request.issued_by
        )
    except TargetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidModeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error sending command to {target_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to send command: {str(e)}")

    queue_position = await commands.queue_position(command)
    return {
        "commandId": command.command_id,
        "status": command.status.value,
        "errorMessage": command.error_message or None,
        "queuePosition": queue_position,
        "estimatedExecutionTime": (
            command.issued_at + timedelta(milliseconds=queue_position * COMMAND_EXECUTION_ESTIMATE_MS)
        ).isoformat(),
    }


@command_router.get("/commands/{command_id}", response_model=Command)
async def get_command_status(command_id: str, commands: CommandQueueDependency = None) -> Command:
    command = await commands.get(command_id)
    if not command:
        raise HTTPException(status_code=404, detail=f"Command {command_id} not found")
    return command


@command_router.get("/targets/{target_id}/commands", response_model=List[Command])
async def get_command_history(target_id: str, limit: int = 50,
                              commands: CommandQueueDependency = None) -> List[Command]:
    return await commands.history(target_id, limit=max(1, min(limit, 500)))
