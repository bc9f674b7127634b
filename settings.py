"""
Persistent settings module. Stores bot configuration in a JSON file
so settings survive deployments (when /data volume is mounted).
"""
import json
import os
import logging

logger = logging.getLogger(__name__)

# Path: use /data if available (container volume), otherwise local
if os.getenv("SETTINGS_FILE"):
    SETTINGS_FILE = os.getenv("SETTINGS_FILE")
elif os.path.exists("/data") and os.access("/data", os.W_OK):
    SETTINGS_FILE = "/data/settings.json"
else:
    SETTINGS_FILE = "./settings.json"

# Default settings
DEFAULTS = {
    "command_prefix": ".",
    "require_admin": ["mute", "unmute", "notify-tagged", "notify-silent"],
    "on_empty_content": "reject",      # "reject" or "use-default:<text>"
    "ignore_own_messages": True,
    "welcome_enabled": True,
    "goodbye_enabled": True,
    "super_admins": [],                # Phone numbers treated as superadmin in every group
    "messages": {
        "groups_only": "Estos comandos solo funcionan en grupos.",
        "admin_only": "❌ Solo los administradores del grupo pueden usar este comando.",
        "mute_usage": "Debes etiquetar al usuario que quieres silenciar. Ejemplo: .mute @Persona",
        "unmute_usage": "Debes etiquetar al usuario que quieres reactivar. Ejemplo: .unmute @Persona",
        "muted": "🔇 *¡USUARIO SILENCIADO!* 🔇\n@{target} ha sido silenciado. El bot eliminará sus mensajes.",
        "unmuted": "🔊 *¡USUARIO REACTIVADO!* 🔊\n@{target} puede volver a enviar mensajes.",
        "not_muted": "El usuario @{target} no estaba silenciado.",
        "notify_usage": "Debes escribir el mensaje después del comando, por ejemplo: {command} Mensaje urgente.",
        "notify_header": "📣 *NOTIFICACIÓN URGENTE* 📣\n_Mensaje de {author}_\n\n*Contenido:* {content}\n\n",
        "welcome": "🎉 ¡Bienvenido/a al grupo! 👋\n*{name}* se ha unido. ¡Esperamos la pases bien!",
        "welcome_default_name": "el nuevo miembro",
        "goodbye": "*{name}* ha abandonado el grupo. ¡Hasta pronto!",
        "goodbye_default_name": "Un miembro",
    },
}

_settings = None

def load_settings() -> dict:
    """Load settings from JSON file, merging with defaults."""
    global _settings
    saved = {}
    if os.path.exists(SETTINGS_FILE):
        try:
            with open(SETTINGS_FILE, "r", encoding="utf-8") as f:
                saved = json.load(f)
        except Exception as e:
            logger.error(f"Error loading settings: {e}")

    # Merge: defaults + saved (saved overrides defaults)
    _settings = {**DEFAULTS, **saved}
    # Messages merge per key so a partial override keeps the other texts
    _settings["messages"] = {**DEFAULTS["messages"], **(saved.get("messages") or {})}
    return _settings

def save_settings(new_settings: dict) -> dict:
    """Save settings to JSON file."""
    global _settings
    # Merge with current settings
    current = get_settings()
    if "messages" in new_settings:
        new_settings = {**new_settings, "messages": {**current["messages"], **new_settings["messages"]}}
    current.update(new_settings)
    _settings = current

    try:
        os.makedirs(os.path.dirname(SETTINGS_FILE) if os.path.dirname(SETTINGS_FILE) else ".", exist_ok=True)
        with open(SETTINGS_FILE, "w", encoding="utf-8") as f:
            json.dump(_settings, f, ensure_ascii=False, indent=2)
        logger.info(f"Settings saved to {SETTINGS_FILE}")
    except Exception as e:
        logger.error(f"Error saving settings: {e}")

    return _settings

def get_settings() -> dict:
    """Get current settings (cached)."""
    global _settings
    if _settings is None:
        return load_settings()
    return _settings

def get(key: str, default=None):
    """Get a single setting value."""
    return get_settings().get(key, default)
