# app/shared/services/cloudinary_service.py
import re
import uuid
import logging
from datetime import datetime

import cloudinary
import cloudinary.uploader
from fastapi import UploadFile

from app.config.settings import settings
from app.core.exceptions import UpstreamError, ValidationError

logger = logging.getLogger(__name__)


class CloudinaryService:
    """Almacenamiento de fotos y firmas de prueba de entrega"""

    def __init__(self):
        if not all([settings.cloudinary_cloud_name, settings.cloudinary_api_key, settings.cloudinary_api_secret]):
            logger.warning("⚠️ Cloudinary no está completamente configurado")
            self.configured = False
            return

        cloudinary.config(
            cloud_name=settings.cloudinary_cloud_name,
            api_key=settings.cloudinary_api_key,
            api_secret=settings.cloudinary_api_secret,
            secure=True
        )
        self.configured = True

    @staticmethod
    def _sanitize(value: str) -> str:
        return re.sub(r"[^A-Za-z0-9_-]", "_", value)

    async def upload_delivery_proof(self, image_file: UploadFile, delivery_number: str, user_id: int, kind: str = "photo") -> str:
        """
        Subir foto/firma de prueba de entrega

        Returns:
            str: URL segura de la imagen subida
        """
        if not self.configured:
            raise UpstreamError("cloudinary", "almacenamiento de imágenes no configurado")

        if not (image_file.content_type or "").startswith("image/"):
            raise ValidationError("El archivo debe ser una imagen válida", field="file")

        await image_file.seek(0)
        file_content = await image_file.read()

        if len(file_content) > settings.max_image_size:
            raise ValidationError(
                f"La imagen no debe superar {settings.max_image_size // (1024 * 1024)}MB",
                field="file"
            )

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        public_id = f"{self._sanitize(delivery_number)}_{kind}_{timestamp}_{str(uuid.uuid4())[:8]}"

        logger.info(f"📤 Subiendo prueba de entrega: {public_id}")
        try:
            result = cloudinary.uploader.upload(
                file_content,
                public_id=public_id,
                folder=f"{settings.cloudinary_folder}/proof_of_delivery",
                transformation=[{"width": 1200, "crop": "limit", "quality": "auto:good"}],
                tags=["proof_of_delivery", kind, f"user_{user_id}"],
                context={"delivery_number": delivery_number, "user_id": str(user_id)},
                resource_type="image",
                overwrite=False
            )
        except Exception as e:
            logger.error(f"❌ Error subiendo imagen a Cloudinary: {e}")
            raise UpstreamError("cloudinary", str(e))

        if "secure_url" not in result:
            raise UpstreamError("cloudinary", "respuesta sin URL")

        logger.info(f"✅ Imagen subida: {result['secure_url']}")
        return result["secure_url"]
