import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

# Convención interna: [IMAGE:<url>:<caption>] (caption puede ser vacío).
# La parsea la capa de mensajería y el renderer de la consola de pruebas.
IMAGE_MARKER_PREFIX = "[IMAGE:"
IMAGE_REF_PATTERN = re.compile(r"\[IMAGE_REF:([A-Za-z0-9_\-]+)\]")


def image_marker(url: str, caption: Optional[str] = "") -> str:
    caption = (caption or "").replace("]", ")").strip()
    return f"[IMAGE:{url}:{caption}]"


@dataclass(frozen=True)
class CollectedImage:
    ref: str
    url: str
    caption: str
    source: str          # 'product' | 'promotion'

    @property
    def marker(self) -> str:
        return image_marker(self.url, self.caption)


class ImageCollector:
    """Acumula las imágenes que los tools devolvieron durante un turno.

    Cada URL recibe un id de referencia estable (img_1, img_2, ...) en orden de
    primera aparición; el modelo puede citarlas con [IMAGE_REF:img_n].
    """

    def __init__(self) -> None:
        self._by_url: Dict[str, CollectedImage] = {}
        self._by_ref: Dict[str, CollectedImage] = {}

    def add(self, url: Optional[str], caption: Optional[str], source: str) -> Optional[str]:
        if not url:
            return None
        existing = self._by_url.get(url)
        if existing:
            return existing.ref
        ref = f"img_{len(self._by_url) + 1}"
        image = CollectedImage(ref=ref, url=url, caption=(caption or "").strip(), source=source)
        self._by_url[url] = image
        self._by_ref[ref] = image
        return ref

    def get(self, ref: str) -> Optional[CollectedImage]:
        return self._by_ref.get(ref)

    @property
    def images(self) -> List[CollectedImage]:
        return list(self._by_url.values())

    def __len__(self) -> int:
        return len(self._by_url)


def resolve_image_refs(reply: str, collector: ImageCollector) -> str:
    """Reemplaza [IMAGE_REF:img_n] por el marker completo; refs desconocidas se eliminan."""
    def _sub(match: re.Match) -> str:
        image = collector.get(match.group(1))
        return image.marker if image else ""
    return IMAGE_REF_PATTERN.sub(_sub, reply)


def inject_images(reply: str, collector: ImageCollector) -> Tuple[str, List[str]]:
    """Post-proceso de la respuesta final del modelo.

    1. Resuelve referencias explícitas [IMAGE_REF:...].
    2. Si la respuesta sigue sin ningún marker [IMAGE:, agrega los markers de las
       imágenes cuyo caption aparece en la respuesta (case-insensitive), o la
       única imagen si solo se recolectó una. Cada marker se agrega una vez.

    Devuelve (texto, markers_agregados).
    """
    text = resolve_image_refs(reply or "", collector)
    if IMAGE_MARKER_PREFIX in text or not len(collector):
        return text, []

    lowered = text.lower()
    single = len(collector) == 1
    injected: List[str] = []
    for image in collector.images:
        mentioned = bool(image.caption) and image.caption.lower() in lowered
        if not (mentioned or single):
            continue
        if image.marker in injected:
            continue
        injected.append(image.marker)

    if injected:
        text = text.rstrip() + "\n" + "\n".join(injected)
    return text, injected
