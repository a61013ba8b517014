# 识别策略常量：可由 CLI 覆盖，这里仅作为默认值
# FaceMatcher 欧氏距离阈值（<= 阈值视为同一人）
MATCH_THRESHOLD = 0.6
# InsightFace (ArcFace) 输出单位向量：余弦相似度 0.40 约等于欧氏距离 sqrt(2 - 2 * 0.40) ≈ 1.10
INSIGHTFACE_MATCH_THRESHOLD = 1.10
# 采集（capture）时高精度检测器的最低置信度
CAPTURE_MIN_CONFIDENCE = 0.5
# 识别轮询周期（秒）
TICK_INTERVAL = 0.1
UNKNOWN_LABEL = "unknown"

# InsightFace det_size：轮询用小尺寸换速度，采集用大尺寸换精度
FAST_DET_SIZE = 320
ACCURATE_DET_SIZE = 640
RECOGNITION_MODEL = "buffalo_l"

# 图库持久化
GALLERY_STORAGE_KEY = "faces"
GALLERY_FILE = "data/faces.json"

# 摄像头请求分辨率
CAMERA_WIDTH = 640
CAMERA_HEIGHT = 480

STATUS_LOG_LIMIT = 20

# 常见系统字体候选（macOS/Windows/Linux），按需扩展
FONT_LIST = [
    # macOS
    "/System/Library/Fonts/STHeiti Medium.ttc",
    "/System/Library/Fonts/STHeiti Light.ttc",
    "/Library/Fonts/Arial Unicode.ttf",
    # Windows
    "C:\\Windows\\Fonts\\msyh.ttc",
    "C:\\Windows\\Fonts\\arialuni.ttf",
    # Linux：中文字体放在前面，否则会优先命中 DejaVuSans
    "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
    "/usr/share/fonts/truetype/noto/NotoSansCJK-Regular.ttc",
    "/usr/share/fonts/truetype/wqy/wqy-zenhei.ttc",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
]
